from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from app.eservices.models import Base, Department, User
from app.eservices.modules.catalog.models import Service
from scripts import init_db


def test_seed_is_idempotent(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'seed.db'}"
    monkeypatch.setenv("ADMIN_EMAIL", "Root@Example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "secret1")
    engine = create_engine(db_url)
    Base.metadata.create_all(bind=engine)

    init_db.seed_only(database_url=db_url)
    init_db.seed_only(database_url=db_url)

    with Session(engine) as s:
        assert s.execute(select(func.count(Department.id))).scalar_one() == len(init_db.DEPARTMENTS)
        assert s.execute(select(func.count(Service.id))).scalar_one() == len(init_db.SERVICES)
        admin = s.execute(select(User).where(User.email == "root@example.com")).scalar_one()
        assert admin.role == "admin"
        free = s.execute(select(Service).where(Service.name == "Health Insurance Registration")).scalar_one()
        assert free.fee == 0
    engine.dispose()
