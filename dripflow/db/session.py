from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dripflow.core.config import settings

engine_kwargs: dict[str, object] = {
    # Detect and recover from stale pooled connections.
    "pool_pre_ping": True,
}

if settings.database_url.lower().startswith("sqlite"):
    # Batch recalculation opens sessions from worker threads.
    engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    # Bound every fact-table read so a stuck source fails instead of hanging a resolver.
    if settings.database_url.lower().startswith("postgresql"):
        engine_kwargs["connect_args"] = {
            "options": f"-c statement_timeout={settings.fact_source_timeout_seconds * 1000}"
        }
    engine_kwargs.update(
        {
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_timeout": settings.db_pool_timeout_seconds,
            "pool_recycle": settings.db_pool_recycle_seconds,
        }
    )

engine = create_engine(settings.database_url, **engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
