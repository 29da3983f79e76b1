"""FastAPI application for Label Engine."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated
from uuid import UUID

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse

from label_engine import __version__
from label_engine.db import async_session_factory, init_db
from label_engine.engine import ClassificationEngine
from label_engine.entities import EntityRef, EntityText
from label_engine.exceptions import (
    ConflictError,
    NotFoundError,
    RuleEvaluationError,
    ValidationError,
)
from label_engine.models.enums import LabelKind
from label_engine.schemas import (
    ApplyResultOut,
    AssignmentOut,
    AssignRequest,
    AttributeOut,
    EntityChangedRequest,
    GenerateOut,
    GenerateRequest,
    HistoryOut,
    LabelOut,
    LabelRequest,
    ResolutionOut,
    ResolveRequest,
    RuleOut,
    RuleRequest,
    SetValueRequest,
    SuggestionOut,
    SweepOut,
    UsageRequest,
)

_engine: ClassificationEngine | None = None


def get_engine() -> ClassificationEngine:
    """Dependency returning the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = ClassificationEngine(async_session_factory)
    return _engine


EngineDep = Annotated[ClassificationEngine, Depends(get_engine)]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    await init_db()
    yield


app = FastAPI(
    title="Label Engine",
    description="Typed entity attributes, labels, rules and suggestions",
    version=__version__,
    lifespan=lifespan,
)


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "errors": exc.errors},
    )


@app.exception_handler(RuleEvaluationError)
async def rule_error_handler(request: Request, exc: RuleEvaluationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


# -----------------------------------------------------------------------------
# Attributes
# -----------------------------------------------------------------------------


@app.get("/entities/{tenant_id}/{entity_id}/attributes")
async def list_attributes(
    tenant_id: str, entity_id: str, engine: EngineDep, language: str | None = None
) -> list[AttributeOut]:
    attributes = await engine.list_values(EntityRef(tenant_id, entity_id), language)
    return [AttributeOut.from_attribute(a) for a in attributes]


@app.put("/entities/{tenant_id}/{entity_id}/attributes/{key}")
async def set_attribute(
    tenant_id: str, entity_id: str, key: str, body: SetValueRequest, engine: EngineDep
) -> AttributeOut:
    result = await engine.set_value(
        EntityRef(tenant_id, entity_id),
        key,
        body.type,
        body.value,
        language=body.language,
        value_format=body.value_format,
        validation_rules=body.validation_rules,
        actor=body.actor,
    )
    if not result.success or result.attribute is None:
        raise ValidationError(result.errors)
    return AttributeOut.from_attribute(result.attribute)


@app.get("/entities/{tenant_id}/{entity_id}/attributes/{key}")
async def get_attribute(
    tenant_id: str, entity_id: str, key: str, engine: EngineDep, language: str | None = None
) -> dict:
    value = await engine.get_value(EntityRef(tenant_id, entity_id), key, language)
    if value is None:
        raise NotFoundError("attribute", f"{tenant_id}/{entity_id}/{key}")
    return value.model_dump(mode="json")


@app.post("/entities/{tenant_id}/{entity_id}/changed")
async def entity_changed(
    tenant_id: str, entity_id: str, body: EntityChangedRequest, engine: EngineDep
) -> ApplyResultOut:
    result = await engine.notify_entity_changed(
        EntityRef(tenant_id, entity_id), body.fields, language=body.language
    )
    return ApplyResultOut.model_validate(result)


# -----------------------------------------------------------------------------
# Assignments
# -----------------------------------------------------------------------------


@app.get("/entities/{tenant_id}/{entity_id}/assignments")
async def list_assignments(
    tenant_id: str,
    entity_id: str,
    engine: EngineDep,
    kind: LabelKind | None = None,
    visible_only: bool = True,
    language: str | None = None,
) -> list[AssignmentOut]:
    assignments = await engine.list_assignments(
        EntityRef(tenant_id, entity_id), kind=kind, visible_only=visible_only, language=language
    )
    return [AssignmentOut.model_validate(a) for a in assignments]


@app.post("/entities/{tenant_id}/{entity_id}/assignments", status_code=status.HTTP_201_CREATED)
async def assign(
    tenant_id: str, entity_id: str, body: AssignRequest, engine: EngineDep
) -> AssignmentOut:
    assignment = await engine.assign(
        EntityRef(tenant_id, entity_id),
        body.label,
        body.kind,
        **body.model_dump(exclude={"label", "kind"}),
    )
    return AssignmentOut.model_validate(assignment)


@app.delete("/entities/{tenant_id}/{entity_id}/assignments/{kind}/{label}")
async def unassign(
    tenant_id: str,
    entity_id: str,
    kind: LabelKind,
    label: str,
    engine: EngineDep,
    language: str | None = None,
    actor: str = "api",
) -> AssignmentOut:
    removed = await engine.unassign(
        EntityRef(tenant_id, entity_id), label, kind, language=language, actor=actor
    )
    if removed is None:
        raise NotFoundError("active assignment", f"{tenant_id}/{entity_id}/{kind.value}:{label}")
    return AssignmentOut.model_validate(removed)


@app.post("/assignments/{assignment_id}/usage")
async def record_usage(assignment_id: UUID, body: UsageRequest, engine: EngineDep) -> AssignmentOut:
    assignment = await engine.record_usage(assignment_id, **body.model_dump())
    return AssignmentOut.model_validate(assignment)


@app.delete("/assignments/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def purge(assignment_id: UUID, engine: EngineDep, actor: str = "api") -> None:
    await engine.purge(assignment_id, actor=actor)


@app.get("/entities/{tenant_id}/{entity_id}/history")
async def history(
    tenant_id: str,
    entity_id: str,
    engine: EngineDep,
    kind: LabelKind | None = None,
    label: str | None = None,
    limit: Annotated[int | None, Query(ge=1)] = None,
) -> list[HistoryOut]:
    rows = await engine.history(EntityRef(tenant_id, entity_id), kind=kind, label=label, limit=limit)
    return [HistoryOut.model_validate(r) for r in rows]


# -----------------------------------------------------------------------------
# Suggestions
# -----------------------------------------------------------------------------


@app.post("/entities/{tenant_id}/{entity_id}/suggestions")
async def generate_suggestions(
    tenant_id: str, entity_id: str, body: GenerateRequest, engine: EngineDep
) -> GenerateOut:
    text = None
    if body.name is not None or body.description is not None:
        text = EntityText(name=body.name, description=body.description)
    result = await engine.generate(
        EntityRef(tenant_id, entity_id),
        text,
        source=body.source,
        max_suggestions=body.max_suggestions,
        kinds=body.kinds,
        language=body.language,
    )
    return GenerateOut.model_validate(result)


@app.get("/entities/{tenant_id}/{entity_id}/suggestions")
async def pending_suggestions(
    tenant_id: str, entity_id: str, engine: EngineDep, kind: LabelKind | None = None
) -> list[SuggestionOut]:
    pending = await engine.pending_suggestions(EntityRef(tenant_id, entity_id), kind)
    return [SuggestionOut.model_validate(s) for s in pending]


@app.post("/suggestions/{suggestion_id}/resolve")
async def resolve_suggestion(
    suggestion_id: UUID, body: ResolveRequest, engine: EngineDep
) -> ResolutionOut:
    result = await engine.resolve(
        suggestion_id,
        body.decision,
        feedback_score=body.feedback_score,
        comment=body.comment,
        reviewer=body.reviewer,
    )
    return ResolutionOut.model_validate(result)


# -----------------------------------------------------------------------------
# Vocabulary and rules
# -----------------------------------------------------------------------------


@app.post("/tenants/{tenant_id}/labels", status_code=status.HTTP_201_CREATED)
async def create_label(tenant_id: str, body: LabelRequest, engine: EngineDep) -> LabelOut:
    label, _ = await engine.create_label(
        tenant_id,
        body.kind,
        body.name,
        description=body.description,
        color=body.color,
        aliases=body.aliases,
    )
    return LabelOut.model_validate(label)


@app.get("/tenants/{tenant_id}/labels")
async def list_labels(
    tenant_id: str, engine: EngineDep, kind: LabelKind | None = None
) -> list[LabelOut]:
    return [LabelOut.model_validate(label) for label in await engine.list_labels(tenant_id, kind=kind)]


@app.post("/tenants/{tenant_id}/rules", status_code=status.HTTP_201_CREATED)
async def create_rule(tenant_id: str, body: RuleRequest, engine: EngineDep) -> RuleOut:
    rule = await engine.create_rule(tenant_id, body.name, **body.model_dump(exclude={"name"}))
    return RuleOut.model_validate(rule)


@app.get("/tenants/{tenant_id}/rules")
async def list_rules(tenant_id: str, engine: EngineDep, active_only: bool = True) -> list[RuleOut]:
    return [RuleOut.model_validate(r) for r in await engine.list_rules(tenant_id, active_only=active_only)]


# -----------------------------------------------------------------------------
# Maintenance
# -----------------------------------------------------------------------------


@app.post("/maintenance/sweep")
async def sweep(engine: EngineDep) -> SweepOut:
    return SweepOut.model_validate(await engine.sweep())
