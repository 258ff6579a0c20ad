from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from .config import DATABASE_URL


def _engine_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    options = {"connect_args": {"check_same_thread": False}}
    # 内存库只能共享同一个连接
    if url in ("sqlite://", "sqlite:///:memory:"):
        options["poolclass"] = StaticPool
    return options


# 使用 config.py 中的 DATABASE_URL 创建数据库引擎
engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

if DATABASE_URL.startswith("sqlite"):
    # SQLite 默认不检查外键，每个新连接都要打开
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# 创建会话工厂
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


# FastAPI 依赖：每个请求一个会话
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
