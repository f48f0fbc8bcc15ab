from __future__ import annotations

import importlib
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from explainer_core import (  # noqa: E402
    AbstentionPolicy,
    ContextAssembler,
    EntityKind,
    ExplainerConfig,
    ExplanationArbiter,
    KnowledgeLookup,
    MedicalEntity,
    MedicalEntitySet,
    RedFlagClassifier,
)

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> ExplainerConfig:
    return ExplainerConfig()


@pytest.fixture
def knowledge(config) -> KnowledgeLookup:
    return KnowledgeLookup.from_config(config)


@pytest.fixture
def policy(config) -> AbstentionPolicy:
    return AbstentionPolicy(config)


@pytest.fixture
def assembler(config) -> ContextAssembler:
    return ContextAssembler(config)


@pytest.fixture
def classifier(config, knowledge, policy) -> RedFlagClassifier:
    return RedFlagClassifier(config, knowledge, policy)


@pytest.fixture
def arbiter(config, knowledge, policy, clock) -> ExplanationArbiter:
    return ExplanationArbiter(config, knowledge, policy, clock=clock)


@pytest.fixture
def ibuprofen_entities() -> MedicalEntitySet:
    return MedicalEntitySet(
        entities=(
            MedicalEntity(
                entity_id="med-1",
                kind=EntityKind.MEDICATION,
                text="ibuprofen 1 tablet",
                provenance="discharge_summary:p1:l12",
                confidence=0.95,
                name="ibuprofen",
            ),
        )
    )


@pytest.fixture
def diabetes_entities() -> MedicalEntitySet:
    return MedicalEntitySet(
        entities=(
            MedicalEntity(
                entity_id="dx-1",
                kind=EntityKind.DIAGNOSIS,
                text="type 2 diabetes",
                provenance="visit_note:p1:l3",
                confidence=0.98,
            ),
            MedicalEntity(
                entity_id="lab-1",
                kind=EntityKind.LAB_RESULT,
                text="HbA1c 7.2%",
                provenance="lab_report:p1:l8",
                confidence=0.9,
            ),
            MedicalEntity(
                entity_id="fu-1",
                kind=EntityKind.FOLLOW_UP,
                text="follow-up appointment in 3 months",
                provenance="visit_note:p2:l1",
                confidence=0.92,
            ),
        )
    )


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    monkeypatch.setenv("EXPLAINER_AUDIT_DB_PATH", str(tmp_path / "explainer-audit-test.sqlite"))
    monkeypatch.setenv("EXPLAINER_AUDIT_SINK", "sqlite")
    # Keep CI deterministic; provider tests inject their own transport.
    monkeypatch.setenv("EXPLAINER_DISABLE_PROVIDERS", "true")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client
