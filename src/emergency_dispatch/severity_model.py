from __future__ import annotations

import logging
import pickle
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import accuracy_score, confusion_matrix, f1_score, precision_score, recall_score
from sklearn.model_selection import train_test_split
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, StandardScaler

from emergency_dispatch.config import DATASET_PATH, MODEL_PATH

LOGGER = logging.getLogger(__name__)

FEATURES = ["incident_type", "description", "age"]
TARGET = "severity"
WEIGHTED_SCORES = {"precision": precision_score, "recall": recall_score, "f1_score": f1_score}


def _features(df: pd.DataFrame) -> Tuple[pd.DataFrame, pd.Series]:
    missing = [c for c in FEATURES + [TARGET] if c not in df.columns]
    if missing:
        raise ValueError(f"Severity dataset is missing columns: {', '.join(missing)}")
    df = df.dropna(subset=[TARGET])
    X = df[FEATURES].assign(description=df["description"].fillna(""), age=df["age"].fillna(df["age"].median()))
    return X, df[TARGET].astype(str)


class SeverityModel:
    """Text classifier that can stand in as the AI triage collaborator.

    Trained on incident type, free-text description and patient age. Its
    `classify` method follows the triage client contract, so it can be
    wrapped in a PrimaryClassifier.
    """

    def __init__(self, model_path: Optional[Path] = None, dataset_path: Optional[Path] = None) -> None:
        self.model_path = Path(model_path or MODEL_PATH)
        self.dataset_path = Path(dataset_path or DATASET_PATH)
        self.model = None

    @staticmethod
    def _build_pipeline() -> Pipeline:
        pre = ColumnTransformer(
            transformers=[
                ("desc", TfidfVectorizer(max_features=1000, ngram_range=(1, 2)), "description"),
                ("cat", OneHotEncoder(handle_unknown="ignore"), ["incident_type"]),
                ("age", StandardScaler(), ["age"]),
            ]
        )
        return Pipeline([("pre", pre), ("clf", LogisticRegression(max_iter=400, class_weight="balanced"))])

    def _load_dataset(self) -> pd.DataFrame:
        return pd.read_csv(self.dataset_path)

    def train_and_save(self) -> None:
        X, y = _features(self._load_dataset())
        pipe = self._build_pipeline()
        pipe.fit(X, y)
        self.model_path.parent.mkdir(parents=True, exist_ok=True)
        with self.model_path.open("wb") as f:
            pickle.dump(pipe, f)
        self.model = pipe
        LOGGER.info("Severity model trained on %d rows, saved to %s", len(X), self.model_path)

    def load(self) -> None:
        if not self.model_path.exists():
            self.train_and_save()
            return
        with self.model_path.open("rb") as f:
            self.model = pickle.load(f)

    def predict(self, incident_type: str, description: str, age: float = 40) -> tuple[str, float]:
        if self.model is None:
            self.load()
        row = pd.DataFrame([{"incident_type": incident_type, "description": description, "age": age}])
        pred = self.model.predict(row)[0]
        proba = max(self.model.predict_proba(row)[0])
        return str(pred), float(round(proba, 3))

    def classify(self, summary: Mapping[str, Any]) -> Dict[str, Any]:
        severity, confidence = self.predict(
            str(summary["incident_type"]), str(summary.get("description", "")), float(summary.get("age", 40))
        )
        return {
            "severity": severity,
            "confidence": confidence,
            "reasoning": f"Severity model classified the {summary['incident_type']} report as {severity}",
            "recommendedActions": [],
        }

    def evaluate(self) -> dict:
        """Hold-out metrics for the bundled dataset."""
        X, y = _features(self._load_dataset())
        x_train, x_test, y_train, y_test = train_test_split(
            X, y, test_size=0.3, random_state=42, stratify=y
        )
        pred = self._build_pipeline().fit(x_train, y_train).predict(x_test)

        labels = sorted(y.unique().tolist())
        metrics: Dict[str, Any] = {"accuracy": round(float(accuracy_score(y_test, pred)), 4)}
        for name, score in WEIGHTED_SCORES.items():
            metrics[name] = round(float(score(y_test, pred, average="weighted", zero_division=0)), 4)
        metrics["labels"] = labels
        metrics["confusion_matrix"] = confusion_matrix(y_test, pred, labels=labels).tolist()
        metrics["sample_size"] = int(len(X))
        return metrics
