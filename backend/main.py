from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from audit_log import InMemoryAuditSink, SQLiteAuditDB, SQLiteAuditSink
from explainer_core import (
    AbstentionPolicy,
    ContextAssembler,
    EntityKind,
    ExplainerConfig,
    ExplainerError,
    ExplanationArbiter,
    GenerationTimeout,
    GenerationUnavailable,
    KnowledgeLookup,
    MedicalEntity,
    MedicalEntitySet,
    RedFlagClassifier,
    SessionBusy,
    SessionNotFound,
    SessionPolicyError,
    TurnPipeline,
    TurnRequest,
    VerdictHookRunner,
)
from explainer_core.time_utils import to_iso
from explainer_generation import KnowledgeFallbackGenerator, ProviderGenerationClient, provider_candidates
from session_store import SessionStore

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

logging.basicConfig(
    level=getattr(logging, os.getenv("EXPLAINER_LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("explainer")


class CreateSessionPayload(BaseModel):
    language: str | None = None


class EntityPayload(BaseModel):
    entity_id: str | None = None
    kind: EntityKind
    text: str = Field(min_length=1)
    provenance: str = "document"
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    name: str | None = None


class TurnPayload(BaseModel):
    question: str = ""
    entities: list[EntityPayload] | None = None
    symptom_text: str | None = None
    language: str | None = None
    extraction_failed: bool = False


class ClassifyPayload(BaseModel):
    symptom_text: str
    language: str | None = None


def _entity_set(entities: list[EntityPayload] | None) -> MedicalEntitySet | None:
    if not entities:
        return None
    return MedicalEntitySet(
        entities=tuple(
            MedicalEntity(
                entity_id=entity.entity_id or f"entity-{index}",
                kind=entity.kind,
                text=entity.text,
                provenance=entity.provenance,
                confidence=entity.confidence,
                name=entity.name,
            )
            for index, entity in enumerate(entities)
        )
    )


class ExplainerApp:
    def __init__(self) -> None:
        self.config = ExplainerConfig.from_env()
        self.knowledge = KnowledgeLookup.from_config(self.config)
        self.policy = AbstentionPolicy(self.config)
        self.assembler = ContextAssembler(self.config)
        self.classifier = RedFlagClassifier(self.config, self.knowledge, self.policy)
        self.arbiter = ExplanationArbiter(self.config, self.knowledge, self.policy)
        self.sessions = SessionStore(self.config)

        self.audit_sink = self._build_audit_sink()
        self.hooks = VerdictHookRunner()
        self.hooks.add_after(self.audit_sink.emit)

        providers = provider_candidates()
        if providers:
            self.generator = ProviderGenerationClient(
                providers,
                timeout_seconds=self.config.generation_timeout_seconds,
            )
            self.generator_name = "provider"
        else:
            logger.info("no generation provider configured; using knowledge fallback")
            self.generator = KnowledgeFallbackGenerator(self.config, self.knowledge)
            self.generator_name = "knowledge_fallback"

        self.pipeline = TurnPipeline(
            config=self.config,
            sessions=self.sessions,
            assembler=self.assembler,
            classifier=self.classifier,
            arbiter=self.arbiter,
            generator=self.generator,
            hooks=self.hooks,
        )

    @staticmethod
    def _build_audit_sink() -> InMemoryAuditSink | SQLiteAuditSink:
        if os.getenv("EXPLAINER_AUDIT_SINK", "sqlite").strip().lower() == "memory":
            return InMemoryAuditSink()
        db_path = os.getenv(
            "EXPLAINER_AUDIT_DB_PATH",
            str(Path(__file__).resolve().parent / "explainer-audit.sqlite"),
        )
        return SQLiteAuditSink(SQLiteAuditDB(db_path))


container = ExplainerApp()
app = FastAPI(title="Patient Explainer Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_ERROR_STATUS: tuple[tuple[type[ExplainerError], int], ...] = (
    (SessionBusy, 409),
    (SessionNotFound, 404),
    (SessionPolicyError, 400),
    (GenerationUnavailable, 503),
    (GenerationTimeout, 504),
)


def _http_error(exc: ExplainerError) -> HTTPException:
    status_code = next((status for error_type, status in _ERROR_STATUS if isinstance(exc, error_type)), 500)
    logger.warning("request failed code=%s status=%d", exc.code, status_code)
    return HTTPException(
        status_code=status_code,
        detail={"message": exc.patient_message, "suggested_action": exc.suggested_action},
    )


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "generator": container.generator_name,
        "active_sessions": len(container.sessions),
    }


@app.post("/sessions", status_code=201)
def create_session(payload: CreateSessionPayload | None = None) -> dict[str, Any]:
    language = payload.language if payload else None
    try:
        session = container.sessions.create(language=language)
    except ExplainerError as exc:
        raise _http_error(exc) from exc
    return {
        "session_id": session.session_id,
        "created_at": to_iso(session.created_at),
        "language": container.config.resolve_language(session.language),
    }


@app.post("/sessions/{session_id}/turns")
def session_turn(session_id: str, payload: TurnPayload) -> dict[str, Any]:
    request = TurnRequest(
        question=payload.question,
        entities=_entity_set(payload.entities),
        symptom_text=payload.symptom_text,
        language=payload.language,
        extraction_failed=payload.extraction_failed,
    )
    try:
        result = container.pipeline.handle_turn(session_id, request)
    except ExplainerError as exc:
        raise _http_error(exc) from exc
    return {"session_id": session_id, **result.as_envelope()}


@app.get("/sessions/{session_id}/history")
def session_history(session_id: str) -> dict[str, Any]:
    try:
        exchanges = container.sessions.history(session_id)
    except ExplainerError as exc:
        raise _http_error(exc) from exc
    return {
        "session_id": session_id,
        "exchanges": [
            {
                "sequence_index": exchange.sequence_index,
                "patient_text": exchange.patient_text,
                "system_text": exchange.system_text,
            }
            for exchange in exchanges
        ],
    }


@app.delete("/sessions/{session_id}")
def terminate_session(session_id: str) -> dict[str, Any]:
    try:
        removed = container.sessions.terminate(session_id)
    except ExplainerError as exc:
        raise _http_error(exc) from exc
    if not removed:
        raise _http_error(SessionNotFound())
    return {"ok": True}


@app.post("/red-flags/classify")
def classify_red_flags(payload: ClassifyPayload) -> dict[str, Any]:
    result = container.classifier.classify(payload.symptom_text, payload.language)
    return result.as_dict()
