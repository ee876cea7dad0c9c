from db import engine, Base, coprocessor_engine, CoprocessorBase
from models import HealthRecord, AccessGrant, DecryptionRequest, AuditEvent, User  # noqa: F401 (registers tables)
from config import DB_URL, COPROCESSOR_DB_URL

def main():
    print(f"Initializing vault database at: {DB_URL}")
    Base.metadata.create_all(engine)
    print("Tables created: " + ", ".join(sorted(Base.metadata.tables)))

    print(f"Initializing local coprocessor database at: {COPROCESSOR_DB_URL}")
    CoprocessorBase.metadata.create_all(coprocessor_engine)
    print("Tables created: " + ", ".join(sorted(CoprocessorBase.metadata.tables)))

if __name__ == "__main__":
    main()
