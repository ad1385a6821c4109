import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from fastapi.middleware.cors import CORSMiddleware
from fastapi_users.password import PasswordHelper
from sqlalchemy import func, select

from .background import drain
from .blobstore import LocalBlobStore, build_blob_store
from .database import async_session_maker, init_db
from .errors import register_exception_handlers
from .media_pipeline import FfmpegTranscoder
from .models import Role, User
from .routes_shared import api_success
from .routers import admin, audio, audio_chapters, audio_parts, books, categories, chapters
from .schemas import UserCreate, UserRead, UserUpdate
from .services.assembly import AudioAssembler
from .settings.config import Settings, settings as default_settings
from .users import auth_backend, fastapi_users

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# ----------------------
# Auto-create admin user
# ----------------------
async def create_admin_user(app: FastAPI):
    cfg: Settings = app.state.settings
    if not cfg.ADMIN_EMAIL or not cfg.ADMIN_PASSWORD:
        logger.warning("ADMIN_EMAIL or ADMIN_PASSWORD not set, skipping admin creation.")
        return

    async with app.state.session_maker() as session:
        result = await session.execute(select(User).where(func.lower(User.email) == cfg.ADMIN_EMAIL.lower()))
        existing_admin = result.scalars().first()
        if existing_admin:
            logger.info("Admin user already exists: %s", cfg.ADMIN_EMAIL)
            return
        session.add(User(
            email=cfg.ADMIN_EMAIL.lower(),
            hashed_password=PasswordHelper().hash(cfg.ADMIN_PASSWORD),
            username=cfg.ADMIN_USERNAME,
            role=Role.ADMIN,
            is_superuser=True,
            is_active=True,
            is_verified=True,
        ))
        await session.commit()
        logger.info("Admin user created: %s", cfg.ADMIN_EMAIL)


def create_app(settings: Optional[Settings] = None, *, blob_store=None, transcoder=None,
               session_maker=None) -> FastAPI:
    cfg = settings or default_settings
    logging.basicConfig(level=cfg.LOG_LEVEL.upper(), format=LOG_FORMAT)

    app = FastAPI(title="Publishing API", debug=cfg.DEBUG)
    app.state.settings = cfg
    app.state.session_maker = session_maker or async_session_maker
    app.state.blob_store = blob_store or build_blob_store(cfg)
    app.state.transcoder = transcoder or FfmpegTranscoder(
        cfg.FFMPEG_BIN, timeout=cfg.TRANSCODE_TIMEOUT_SEC, bitrate=cfg.MERGE_AUDIO_BITRATE,
    )
    app.state.assembler = AudioAssembler(
        app.state.blob_store, app.state.transcoder, session_maker=app.state.session_maker,
    )

    # any origin only while debugging; otherwise just the configured list
    origins = cfg.CORS_ORIGINS or (["*"] if cfg.DEBUG else [])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=bool(cfg.CORS_ORIGINS),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app, debug=cfg.DEBUG)

    # ----------------------
    # Route Includes
    # ----------------------
    # child routers first: their literal segments must win over /api/audio/{audio_id}
    for module in (audio_chapters, audio_parts, audio, books, chapters, categories, admin):
        app.include_router(module.router)

    # Authentication Routes
    app.include_router(fastapi_users.get_auth_router(auth_backend), prefix="/api/auth/jwt", tags=["auth"])
    app.include_router(fastapi_users.get_register_router(UserRead, UserCreate), prefix="/api/auth", tags=["auth"])
    # self-service /me only; other accounts are managed through /api/admin
    users_router = fastapi_users.get_users_router(UserRead, UserUpdate)
    users_router.routes = [r for r in users_router.routes if getattr(r, "path", "").startswith("/me")]
    app.include_router(users_router, prefix="/api/users", tags=["users"])

    # Local uploads are served straight from disk
    if isinstance(app.state.blob_store, LocalBlobStore):
        app.mount(app.state.blob_store.mount_path, StaticFiles(directory=app.state.blob_store.root), name="uploads")

    @app.get("/health")
    async def health():
        return api_success({"blob_backend": cfg.BLOB_BACKEND}, "OK")

    @app.on_event("startup")
    async def on_startup():
        await init_db(app.state.session_maker.kw.get("bind"), create_all=cfg.RUN_DB_CREATE_ALL)
        await create_admin_user(app)

    @app.on_event("shutdown")
    async def on_shutdown():
        # let queued merges and blob deletions finish
        await drain(timeout=30)

    return app


app = create_app()
