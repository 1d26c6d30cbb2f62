from __future__ import annotations

from emergency_dispatch.config import setup_logging
from emergency_dispatch.severity_model import SeverityModel


def main() -> None:
    setup_logging()
    model = SeverityModel()
    model.train_and_save()
    metrics = model.evaluate()
    print(f"Model trained and saved to {model.model_path}")
    print(f"Hold-out accuracy: {metrics['accuracy']:.3f}")


if __name__ == "__main__":
    main()
