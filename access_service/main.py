from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
import uvicorn

from access_service.auth_services import get_token_service
from access_service.config import get_settings
from access_service.database import SessionLocal, create_schema, wait_for_db
from access_service.errors import AccessError
from access_service.events import close_producer
from access_service.logger import logger
from access_service.routes import auth, permissions, roles, users
from access_service.seed import seed_defaults


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AccessError)
    async def access_error_handler(request: Request, exc: AccessError):
        logger.info(
            "Request rejected",
            extra={"path": request.url.path, "status_code": exc.status_code, "code": exc.code}
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app():
    settings = get_settings()
    app = FastAPI(title="Access Control Service")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=["*"]
    )

    @app.on_event("startup")
    async def startup():
        logger.info("Access Control Service startup")
        # Fails startup when JWT_SECRET_KEY is missing.
        get_token_service()
        app.state.db = await wait_for_db()
        await create_schema()
        if settings.seed_on_startup:
            async with SessionLocal() as session:
                await seed_defaults(session)

    @app.on_event("shutdown")
    async def shutdown():
        logger.info("Access Control Service shutdown")
        await close_producer()

    register_error_handlers(app)
    Instrumentator().instrument(app).expose(app)

    app.include_router(auth.router)
    app.include_router(roles.router)
    app.include_router(users.router)
    app.include_router(permissions.router)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
