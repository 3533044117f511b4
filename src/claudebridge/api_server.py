import time

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import APIKeyHeader

from .chat_completions import ChatCompletionService, parse_chat_request, read_json_body
from .claude_client import THINK_MODEL_SUFFIX
from .config import debug_print
from .pool import parse_bearer_credential

API_KEY_HEADER = APIKeyHeader(name="Authorization", auto_error=False)


def list_models_payload(base_model: str) -> dict:
    created = int(time.time())
    return {
        "object": "list",
        "data": [
            {"id": model_id, "object": "model", "created": created, "owned_by": "anthropic"}
            for model_id in (base_model, base_model + THINK_MODEL_SUFFIX)
        ],
    }


def build_router(config: dict) -> APIRouter:
    """Routes for the OpenAI-compatible surface.

    The chat service is looked up on ``app.state`` per request so the lifespan
    owns its construction.
    """
    router = APIRouter()
    base_model = config.get("default_model")

    async def require_api_key(key: str = Depends(API_KEY_HEADER)) -> None:
        expected = config.get("api_key")
        if not expected:
            return
        if not key or not key.startswith("Bearer "):
            raise HTTPException(
                status_code=401,
                detail="Invalid Authorization header. Expected 'Bearer YOUR_API_KEY'",
            )
        if key[7:].strip() != expected:
            raise HTTPException(status_code=401, detail="Invalid API Key.")

    async def serve_chat(request: Request, service: ChatCompletionService):
        debug_print("\n" + "=" * 80 + "\n🔵 NEW API REQUEST RECEIVED\n" + "=" * 80)
        body = await read_json_body(request)
        chat_request = parse_chat_request(body, default_model=base_model)
        return await service.complete(chat_request, request.is_disconnected)

    @router.get("/health")
    async def health_check():
        return {"status": "ok"}

    @router.get("/v1/models")
    @router.get("/hf/v1/models")
    async def list_models(_: None = Depends(require_api_key)):
        return list_models_payload(base_model)

    @router.post("/v1/chat/completions")
    @router.post("/hf/v1/chat/completions")
    async def chat_completions(request: Request, _: None = Depends(require_api_key)):
        return await serve_chat(request, request.app.state.chat_service)

    if config.get("enable_mirror_api"):
        prefix = config.get("mirror_api_prefix")

        @router.get(f"{prefix}/v1/models")
        async def mirror_list_models(key: str = Depends(API_KEY_HEADER)):
            if parse_bearer_credential(key) is None:
                raise HTTPException(status_code=401, detail="Missing session key in Authorization header.")
            return list_models_payload(base_model)

        @router.post(f"{prefix}/v1/chat/completions")
        async def mirror_chat_completions(request: Request, key: str = Depends(API_KEY_HEADER)):
            credential = parse_bearer_credential(key)
            if credential is None:
                raise HTTPException(status_code=401, detail="Missing session key in Authorization header.")
            service = request.app.state.chat_service.for_credential(credential)
            return await serve_chat(request, service)

    return router
