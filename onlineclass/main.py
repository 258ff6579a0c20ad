import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.cors import CORSMiddleware

from .config import FRONT_URL, UPLOAD_DIR
from .db import engine
from .errors import INTERNAL_ERROR_DETAIL
from .logging_config import configure_logging
from .models import Base
from .realtime import build_relay, router as realtime_router
from .routes import router
from .utils import mkdir

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    Base.metadata.create_all(bind=engine)
    await app.state.relay.start()
    try:
        yield
    finally:
        await app.state.relay.stop()


def create_app(relay=None) -> FastAPI:
    app = FastAPI(title="Online Classroom", lifespan=lifespan)
    app.state.relay = relay or build_relay()

    # 引入路由
    app.include_router(router)
    app.include_router(realtime_router)

    # 上传的资料
    app.mount("/uploads", StaticFiles(directory=mkdir(UPLOAD_DIR), check_dir=False), name="uploads")

    # 添加 CORS 中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[FRONT_URL],  # 允许的前端地址
        allow_credentials=True,
        allow_methods=["*"],  # 允许的 HTTP 方法
        allow_headers=["*"],  # 允许的请求头
    )

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("处理 %s %s 时出错", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": INTERNAL_ERROR_DETAIL})

    return app


app = create_app()
