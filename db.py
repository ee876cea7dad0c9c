from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from config import DB_URL, COPROCESSOR_DB_URL

# Vault store ------------------------------------------------------------------
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()

# Local coprocessor store ------------------------------------------------------
coprocessor_engine = create_engine(COPROCESSOR_DB_URL, connect_args={"check_same_thread": False})
CoprocessorSessionLocal = sessionmaker(bind=coprocessor_engine, autoflush=False, autocommit=False)
CoprocessorBase = declarative_base()
