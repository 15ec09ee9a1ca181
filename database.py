"""
=============================================================================
DATABASE.PY — Configuración de la Base de Datos
=============================================================================
Conexión, sesiones y clase base de los modelos.

En DESARROLLO: SQLite (un archivo volo.db)
En PRODUCCIÓN: PostgreSQL (variable de entorno DATABASE_URL)

Los tests apuntan DATABASE_URL a un SQLite temporal antes de importar
este módulo.
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# ─────────────────────────────────────────────────────────────────────────────
# CONEXIÓN
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./volo.db")

# Los proveedores dan "postgres://", pero usamos el driver psycopg (v3)
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)

# ─────────────────────────────────────────────────────────────────────────────
# ENGINE
# ─────────────────────────────────────────────────────────────────────────────
# check_same_thread=False → solo SQLite; FastAPI atiende peticiones
# síncronas desde un pool de hilos.

engine_args = {}
if DATABASE_URL.startswith("sqlite"):
    engine_args["connect_args"] = {"check_same_thread": False}

engine = create_engine(DATABASE_URL, echo=False, **engine_args)

# ─────────────────────────────────────────────────────────────────────────────
# SESSION + BASE
# ─────────────────────────────────────────────────────────────────────────────

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Dependencia de FastAPI: abre una sesión por petición y la cierra al final.

      @app.get("/algo")
      def mi_endpoint(db: Session = Depends(get_db)):
          ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Crea todas las tablas que aún no existan."""
    # Importar los modelos registra sus tablas en Base.metadata
    import models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def drop_db():
    """Borra todas las tablas. Solo para tests."""
    import models  # noqa: F401
    Base.metadata.drop_all(bind=engine)
