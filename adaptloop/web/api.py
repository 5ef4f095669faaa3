from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from adaptloop.errors import (
    NoActivePromptVersion,
    RateLimited,
    StoreUnavailable,
    SynthesisUnavailable,
)
from adaptloop.rate_limit import RateLimitDecision
from adaptloop.service import AdaptiveLoop

router = APIRouter()


class ReportErrorRequest(BaseModel):
    error_message: str = Field(min_length=1)
    error_context: Optional[Dict[str, Any]] = None
    project_context: Optional[Dict[str, Any]] = None
    deployment_provider: Optional[str] = None


class FixOutcomeRequest(BaseModel):
    success: bool


class RecordOutcomeRequest(BaseModel):
    prompt_version: str
    user_prompt: str
    status: Literal["success", "failure", "error"]
    error_message: Optional[str] = None
    generation_time_ms: Optional[int] = None
    generated_artifact: Optional[str] = None
    model_used: Optional[str] = None


class TrafficRequest(BaseModel):
    allocation: Dict[str, float]


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)


def get_loop(request: Request) -> AdaptiveLoop:
    return request.app.state.loop


def client_identifier(request: Request) -> str:
    """Rate limit key: forwarded client address, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    connecting = request.headers.get("cf-connecting-ip")
    if connecting:
        return connecting
    return request.client.host if request.client else "unknown"


async def enforce_rate_limit(
    request: Request,
    response: Response,
    loop: AdaptiveLoop = Depends(get_loop),
) -> RateLimitDecision:
    """Count the request against the caller's window; 429 via RateLimited when over."""
    decision = loop.limiter.enforce(client_identifier(request))
    response.headers.update(decision.headers())
    return decision


# Error reports are counted inside ErrorLearningService.report_error
RATE_LIMITED = [Depends(enforce_rate_limit)]


# =============================================================================
# Error learning
# =============================================================================

@router.post("/errors/report")
async def report_error(
    req: ReportErrorRequest,
    request: Request,
    response: Response,
    loop: AdaptiveLoop = Depends(get_loop),
):
    """Resolve an error from learned patterns, learning a new fix on a miss."""
    result = await loop.report_error(
        req.error_message,
        identifier=client_identifier(request),
        error_context=req.error_context,
        project_context=req.project_context,
        deployment_provider=req.deployment_provider,
    )
    if result.rate_limit is not None:
        response.headers.update(result.rate_limit.headers())
    return result.to_dict()


@router.get("/patterns", dependencies=RATE_LIMITED)
async def list_patterns(
    category: Optional[str] = None,
    limit: int = 50,
    loop: AdaptiveLoop = Depends(get_loop),
):
    patterns = await loop.patterns.list_patterns(category=category, limit=limit)
    return [p.to_dict() for p in patterns]


@router.post("/patterns/{pattern_id}/outcome", dependencies=RATE_LIMITED)
async def record_fix_outcome(
    pattern_id: int,
    req: FixOutcomeRequest,
    loop: AdaptiveLoop = Depends(get_loop),
):
    """Report whether applying a learned fix worked."""
    pattern = await loop.patterns.record_fix_outcome(pattern_id, req.success)
    return pattern.to_dict()


# =============================================================================
# Prompt evolution
# =============================================================================

@router.get("/prompts/select", dependencies=RATE_LIMITED)
async def select_prompt(loop: AdaptiveLoop = Depends(get_loop)):
    version = await loop.select_prompt_for_generation()
    return {"version": version.version, "system_prompt": version.system_prompt}


@router.get("/prompts", dependencies=RATE_LIMITED)
async def list_prompts(loop: AdaptiveLoop = Depends(get_loop)):
    versions = await loop.versions.list_versions()
    return [v.to_dict() for v in versions]


@router.put("/prompts/traffic", dependencies=RATE_LIMITED)
async def set_traffic(req: TrafficRequest, loop: AdaptiveLoop = Depends(get_loop)):
    """Promote versions by replacing the traffic split (must sum to 100)."""
    versions = await loop.set_traffic(req.allocation)
    return [v.to_dict() for v in versions]


@router.post("/outcomes", dependencies=RATE_LIMITED)
async def record_outcome(req: RecordOutcomeRequest, loop: AdaptiveLoop = Depends(get_loop)):
    recorded = await loop.record_outcome(
        req.prompt_version,
        req.user_prompt,
        req.status,
        error_message=req.error_message,
        generation_time_ms=req.generation_time_ms,
        generated_artifact=req.generated_artifact,
        model_used=req.model_used,
    )
    return {"recorded": recorded}


@router.post("/improvement/run", dependencies=RATE_LIMITED)
async def run_improvement(loop: AdaptiveLoop = Depends(get_loop)):
    result = await loop.run_scheduled_improvement()
    return result.to_dict()


@router.post("/generate", dependencies=RATE_LIMITED)
async def generate_website(req: GenerateRequest, loop: AdaptiveLoop = Depends(get_loop)):
    site = await loop.generate_website(req.prompt)
    return site.to_dict()


# =============================================================================
# Error mapping
# =============================================================================

def register_error_handlers(app: FastAPI) -> None:
    """Translate loop exceptions into HTTP responses."""

    @app.exception_handler(RateLimited)
    async def rate_limited(request: Request, exc: RateLimited):
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), **exc.decision.to_dict()},
            headers=exc.decision.headers(),
        )

    @app.exception_handler(SynthesisUnavailable)
    async def synthesis_unavailable(request: Request, exc: SynthesisUnavailable):
        return JSONResponse(status_code=503, content={"detail": str(exc), "kind": exc.kind})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(NoActivePromptVersion)
    async def no_active_version(request: Request, exc: NoActivePromptVersion):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def bad_request(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(LookupError)
    async def not_found(request: Request, exc: LookupError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})
