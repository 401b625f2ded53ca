from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from medreminders.reminders.config import settings

# Shared by the Celery worker threads that fan out over users
engine = create_engine(
    settings.DATABASE_URL,
    pool_size=settings.PROCESSING_MAX_WORKERS + 4,
    max_overflow=10,
    pool_recycle=300,      # Recycle connections every 5 minutes
    pool_pre_ping=True,    # Validate connections before use
    pool_timeout=30,
    echo=False
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
