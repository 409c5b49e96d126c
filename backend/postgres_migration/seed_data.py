"""
Seed the default system categories.
Run with: cd backend && python postgres_migration/seed_data.py

Safe to run repeatedly; existing categories are left untouched.
"""

import sys
from pathlib import Path

# Allow running from either backend/ or backend/postgres_migration/
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.database import engine, SessionLocal, Base
from app.services.category_service import initialize_default_categories


def main():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        created = initialize_default_categories(db)
        print(f"✓ Seeded {created} default categories")
    finally:
        db.close()


if __name__ == "__main__":
    main()
