# backend/database.py

import logging
from sqlmodel import create_engine, Session, SQLModel
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend import config

logger = logging.getLogger(__name__)


def crear_engine(database_url: str = None):
    """Crea el engine de SQLAlchemy para la URL indicada (o la configurada)."""
    url = database_url or config.DATABASE_URL
    if url.startswith("sqlite"):
        # SQLite en memoria: una única conexión compartida entre hilos
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=config.DB_ECHO, **kwargs)
    return create_engine(
        url,
        echo=config.DB_ECHO,
        pool_size=20,
        max_overflow=40,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


engine = crear_engine()

# "Fábrica de Sesiones" que pueden importar scripts externos y los servicios.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, class_=Session, expire_on_commit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_db_and_tables(bind=None):
    # Para evitar importaciones circulares, importamos los modelos aquí dentro
    from backend import modelos  # noqa: F401
    logger.info("Creando tablas en la base de datos...")
    SQLModel.metadata.create_all(bind or engine)
    logger.info("Tablas creadas exitosamente.")
