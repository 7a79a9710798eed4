import os

import pytest
from fastapi.testclient import TestClient


@pytest.fixture(scope="session")
def app_module(tmp_path_factory):
    # ---- test database ----
    tmp_dir = tmp_path_factory.mktemp("asset_registry")
    db_path = tmp_dir / "test_assets.db"
    os.environ["APP_DB_PATH"] = str(db_path)
    os.environ.pop("APP_DATABASE_URL", None)
    os.environ["APP_SEED_CATEGORIES"] = "0"
    os.environ["APP_BCRYPT_ROUNDS"] = "4"
    os.environ["APP_BACKUP_DIR"] = str(tmp_dir / "backups")

    import main
    from db import Base, create_db_engine

    engine = create_db_engine()
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    return main


@pytest.fixture(scope="session")
def data_client(app_module):
    from client import DataClient

    dc = DataClient()
    yield dc
    dc.dispose()


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as c:
        yield c


@pytest.fixture(autouse=True)
def clean_db(data_client):
    # wipe per test, children before parents
    from dbtool import wipe_all

    wipe_all(data_client)
    yield


@pytest.fixture()
def electronics(data_client):
    category = data_client.categories.create({"name": "Electronics", "slug": "electronics"})
    laptops = data_client.sub_categories.create(
        {"name": "Laptops", "slug": "laptops", "category_id": category.id}
    )
    return category, laptops


@pytest.fixture()
def purchase_order(data_client):
    from datetime import datetime, timezone

    return data_client.purchase_orders.create(
        {
            "po_number": "PO-1001",
            "date": datetime.now(timezone.utc),
            "total_amount": 100.0,
            "currency": "INR",
            "line_items": {
                "create": [
                    {"sr_no": 1, "product_name": "Laptop bag", "quantity": 2, "unit_price": 20.0, "total_amount": 40.0},
                    {"sr_no": 2, "product_name": "Mouse", "quantity": 3, "unit_price": 20.0, "total_amount": 60.0},
                ]
            },
        },
        include={"line_items": True},
    )
