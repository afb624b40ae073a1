import os

from dotenv import load_dotenv

from app.database import Base, SessionLocal, engine
from app.models.admin import Admin
from app.services.auth_service import hash_password

load_dotenv()

# Ensure all tables exist
Base.metadata.create_all(bind=engine)


def run_seed():
    db = SessionLocal()
    try:
        # Read values from .env
        username = os.getenv("SEED_ADMIN_USERNAME")
        password = os.getenv("SEED_ADMIN_PASSWORD")

        if not username or not password:
            print("✔ SEED_ADMIN_USERNAME/SEED_ADMIN_PASSWORD not set, skipping seeding.")
            return

        # If database has no admins create the default one
        if db.query(Admin).count() == 0:
            db.add(Admin(username=username, password=hash_password(password)))
            db.commit()
            print("✔ Default admin seeded!")
        else:
            print("✔ Admins already present, skipping seeding.")
    except Exception as e:
        db.rollback()
        print("❌ Seeding error:", e)
    finally:
        db.close()


if __name__ == "__main__":
    run_seed()
