import asyncio

import pytest

from chatcommerce.models.catalog import Product, create_product
from chatcommerce.models.database import create_user, init_db
from chatcommerce.models.schemas import ShippingAddress

ADDRESS = ShippingAddress(
    street="12 Lake Road",
    city="Dhaka",
    state="Dhaka",
    zip_code="1207",
    country="Bangladesh",
)


async def seed_catalog(db_path: str) -> dict[str, Product]:
    return {
        "air_max": await create_product(
            db_path, "Nike Air Max", "Nike", 129.99, "sneakers",
            sizes=["8", "9", "10"], colors=["Black", "White", "Red"], stock=20,
            description="Cushioned everyday sneaker", gender="men",
        ),
        "chuck": await create_product(
            db_path, "Converse Chuck Taylor", "Converse", 59.99, "casual",
            sizes=["7", "8", "9", "10"], colors=["Red", "Black"], stock=5,
            description="Classic canvas high top", gender="unisex",
        ),
        "timberland": await create_product(
            db_path, "Timberland Premium Boot", "Timberland", 189.99, "boots",
            sizes=["9", "10", "11"], colors=["Wheat", "Black"], stock=3,
            description="Waterproof leather work boot", gender="men",
        ),
        "arizona": await create_product(
            db_path, "Birkenstock Arizona", "Birkenstock", 99.0, "sandals",
            sizes=["8", "9"], colors=["Brown"], stock=10,
            description="Two strap cork footbed sandal", gender="women",
        ),
    }


@pytest.fixture
async def db_path(tmp_path):
    path = str(tmp_path / "store.db")
    await init_db(path)
    return path


@pytest.fixture
async def products(db_path):
    return await seed_catalog(db_path)


@pytest.fixture
async def user(db_path):
    return await create_user(
        db_path, "shopper@example.com", "Sam Shopper", "secret123",
        phone="01700000000", shipping_address=ADDRESS,
    )


@pytest.fixture
async def user_without_address(db_path):
    return await create_user(db_path, "new@example.com", "New Shopper", "secret123")


@pytest.fixture
def api_store(tmp_path):
    """A seeded database for the synchronous HTTP tests."""
    path = str(tmp_path / "api.db")

    async def setup():
        await init_db(path)
        return await seed_catalog(path)

    return path, asyncio.run(setup())
