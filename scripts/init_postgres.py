"""
Initialize the database schema
Creates all tables defined in models, plus the overlap exclusion constraint on PostgreSQL
"""
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import DATABASE_URL
from core.database import create_db_engine, init_db


def init_database():
    """Create all tables in the database"""
    print("Creating tables...")

    try:
        engine = create_db_engine(DATABASE_URL)
        init_db(engine)
        print("✓ Tables created successfully!")
        print("\nCreated tables:")
        print("  - organizations")
        print("  - services")
        print("  - professionals")
        print("  - customers")
        print("  - appointments")
        if engine.dialect.name == "postgresql":
            print("\n✓ btree_gist extension and appointment overlap constraint in place")

    except Exception as e:
        print(f"✗ Error creating tables: {e}")
        sys.exit(1)


if __name__ == "__main__":
    init_database()
