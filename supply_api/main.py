"""
API server: OIDC login (Authorization Code + PKCE), access token issuance and
refresh, and the bearer-protected profile endpoint.

Tables, env seeding and OIDC discovery run in the lifespan, so importing this
module touches neither the database nor the provider. If the provider is not configured or cannot
be discovered, the process still serves /health and the token-protected routes;
the OIDC endpoints answer 503.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from supply_api.config import Settings
from supply_api.database import create_db_engine, create_session_factory, init_db
from supply_api.flow_store import FlowStore, InMemoryFlowStore
from supply_api.login import router as login_router
from supply_api.logout import router as logout_router
from supply_api.me import router as me_router
from supply_api.oidc import IdentityProvider, OIDCConfigError, OIDCProvider
from supply_api.rate_limit import RateLimiter
from supply_api.refresh import router as refresh_router
from supply_api.responses import install_error_handlers, ok
from supply_api.seed import seed_from_env
from supply_api.tokens import JWTManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, seed accounts from env, discover the OIDC provider unless one was injected."""
    init_db(app.state.engine)
    db = app.state.session_factory()
    try:
        seed_from_env(db, app.state.settings)
    finally:
        db.close()

    if app.state.oidc is None:
        try:
            app.state.oidc = await run_in_threadpool(OIDCProvider.discover, app.state.settings.oidc)
        except OIDCConfigError as e:
            logger.error("OIDC disabled: %s", e)
    yield


def create_app(
    settings: Settings | None = None,
    *,
    oidc_provider: IdentityProvider | None = None,
    flow_store: FlowStore | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(title="Supply API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.oidc = oidc_provider
    app.state.flow_store = flow_store or InMemoryFlowStore()
    app.state.rate_limiter = RateLimiter()
    app.state.jwt_manager = JWTManager(settings.jwt.secret, settings.jwt.duration, settings.jwt.algorithm)

    # Engine creation does not connect; tables and seed data are set up in lifespan
    app.state.engine = create_db_engine(settings.database_url)
    app.state.session_factory = create_session_factory(app.state.engine)

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"],
            allow_headers=["Origin", "Content-Type", "Accept", "Authorization"],
        )

    install_error_handlers(app)
    app.include_router(login_router, tags=["auth"])
    app.include_router(logout_router, tags=["auth"])
    app.include_router(refresh_router, tags=["auth"])
    app.include_router(me_router, tags=["user"])

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return ok({"status": "healthy", "oidc_configured": app.state.oidc is not None})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=app.state.settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "supply_api.main:app",
        host="0.0.0.0",
        port=3000,
        reload=False,
    )
