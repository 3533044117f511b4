from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api_server import build_router
from .chat_completions import ChatCompletionService, ClientFactory
from .cleanup import ConversationCleaner
from .config import get_config, log_config, split_address
from .errors import ConfigurationError
from .pool import CredentialPool, parse_sessions


def create_app(config: Optional[dict] = None, client_factory: Optional[ClientFactory] = None) -> FastAPI:
    config = get_config() if config is None else config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pool = CredentialPool(parse_sessions(config.get("sessions")))
        if len(pool) == 0 and not config.get("enable_mirror_api"):
            raise ConfigurationError("no sessions configured, set SESSIONS or enable the mirror API")
        log_config(config, pool.credentials)

        cleaner = ConversationCleaner(
            max_attempts=config.get("cleanup_attempts", 3),
            retry_delay_seconds=config.get("cleanup_retry_delay_seconds", 1.0),
        )
        app.state.pool = pool
        app.state.cleaner = cleaner
        app.state.chat_service = ChatCompletionService(pool, config, cleaner, client_factory=client_factory)
        try:
            yield
        finally:
            await cleaner.shutdown()

    app = FastAPI(title="Claude Bridge", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(build_router(config))
    return app


def run() -> None:
    config = get_config()
    host, port = split_address(config.get("address"))
    print("=" * 60)
    print("🚀 Claude Bridge Server Starting...")
    print("=" * 60)
    print(f"📚 API Base URL: http://localhost:{port}/v1")
    if config.get("enable_mirror_api"):
        print(f"🪞 Mirror API: http://localhost:{port}{config.get('mirror_api_prefix')}/v1")
    print("=" * 60)
    uvicorn.run(create_app(config), host=host, port=port)


if __name__ == "__main__":
    run()
