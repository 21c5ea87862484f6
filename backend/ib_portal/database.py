"""
数据库连接与会话
"""
from typing import Any, Dict, Generator, Iterable

from sqlalchemy import create_engine, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from ib_portal.config import settings


is_sqlite = settings.DATABASE_URL.startswith("sqlite")

database_url = settings.DATABASE_URL
if database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)

if is_sqlite:
    engine = create_engine(
        database_url,
        echo=settings.DEBUG,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        database_url,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
    )

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def get_db() -> Generator[Session, None, None]:
    """FastAPI 依赖：获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """创建所有表（开发环境使用，生产环境走 alembic）"""
    from ib_portal import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def upsert(
    db: Session,
    model,
    values: Dict[str, Any],
    conflict_columns: Iterable[str],
    update_columns: Iterable[str],
    keep_if_null: Iterable[str] = (),
):
    """按自然键执行单条 INSERT ... ON CONFLICT DO UPDATE

    插入与更新在同一条语句里完成，同一自然键的并发写入由数据库自身的冲突处理串行化。
    keep_if_null 中的列：新值为 NULL 时保留库里的旧值。
    仅支持 PostgreSQL 和 SQLite。
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise NotImplementedError(f"upsert 不支持的数据库: {dialect}")

    table = model.__table__
    keep = set(keep_if_null)
    set_ = {}
    for col in update_columns:
        if col in keep:
            set_[col] = func.coalesce(stmt.excluded[col], table.c[col])
        else:
            set_[col] = stmt.excluded[col]
    stmt = stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=set_)
    return db.execute(stmt)
