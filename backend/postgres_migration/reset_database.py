"""
Script to reset the database by dropping all tables and recreating them.
WARNING: This will delete all data!
"""
import sys
from pathlib import Path

backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from sqlalchemy import inspect, text

from app.database import engine, Base
import app.models  # noqa: F401  (registers tables on Base.metadata)


def _terminate_other_connections() -> None:
    if engine.dialect.name != "postgresql":
        return
    with engine.connect() as conn:
        print("Terminating active database connections...")
        try:
            conn.execute(text("""
                SELECT pg_terminate_backend(pg_stat_activity.pid)
                FROM pg_stat_activity
                WHERE pg_stat_activity.datname = current_database()
                AND pid <> pg_backend_pid();
            """))
            conn.commit()
            print("✓ Active connections terminated")
        except Exception as e:
            print(f"⚠ Could not terminate connections: {e}")


def reset_database():
    """Drop all tables and recreate them from the SQLAlchemy models."""
    print("⚠️  WARNING: This will delete all existing data!")

    engine.dispose()
    _terminate_other_connections()

    existing = inspect(engine).get_table_names()
    if existing:
        print(f"\nDropping {len(existing)} tables...")
        Base.metadata.drop_all(bind=engine)
        print("✓ All tables dropped")
    else:
        print("No tables found - database is already empty")

    engine.dispose()

    print("\nCreating tables...")
    Base.metadata.create_all(bind=engine)
    print("✓ All tables created successfully!")

    print("\nCreated tables:")
    for table_name in sorted(inspect(engine).get_table_names()):
        print(f"  - {table_name}")

    print("\n✅ Database reset complete! You can now run seed_data.py")


if __name__ == "__main__":
    reset_database()
