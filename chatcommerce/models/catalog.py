import json
import aiosqlite
from pydantic import Field

from chatcommerce.errors import NotFoundError
from chatcommerce.models.database import connect, new_id
from chatcommerce.models.schemas import CamelModel

CATEGORIES = ("running", "casual", "formal", "sports", "boots", "sandals", "sneakers")
GENDERS = ("men", "women", "unisex")
SHOE_SIZES = (
    "5", "5.5", "6", "6.5", "7", "7.5", "8", "8.5", "9",
    "9.5", "10", "10.5", "11", "11.5", "12", "12.5", "13",
)

# Words shoppers use for a category -> the category we actually stock them under
CATEGORY_SYNONYMS = {
    "running": "sneakers",
    "athletic": "sneakers",
    "sport": "sports",
    "dress": "formal",
    "work": "boots",
}

SORTABLE_FIELDS = {
    "createdAt": "created_at",
    "price": "price",
    "name": "name",
    "brand": "brand",
    "stock": "stock",
}


class Product(CamelModel):
    id: str
    name: str
    description: str = ""
    brand: str
    price: float = Field(ge=0)
    category: str
    sizes: list[str] = Field(default_factory=list)
    colors: list[str] = Field(default_factory=list)
    stock: int = Field(default=0, ge=0)
    gender: str = "unisex"
    image: str = ""
    created_at: str | None = None

    def summary(self) -> dict:
        """The subset of fields shown next to cart and chat items."""
        return {
            "id": self.id,
            "name": self.name,
            "brand": self.brand,
            "price": self.price,
            "image": self.image,
            "colors": self.colors,
            "sizes": self.sizes,
            "category": self.category,
        }


def normalize_category(category: str) -> str:
    key = category.strip().lower()
    return CATEGORY_SYNONYMS.get(key, key)


def _contains(term: str) -> str:
    """LIKE pattern for a case-insensitive substring match of ``term``."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _row_to_product(row) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        brand=row["brand"],
        price=row["price"],
        category=row["category"],
        sizes=json.loads(row["sizes"]),
        colors=json.loads(row["colors"]),
        stock=row["stock"],
        gender=row["gender"],
        image=row["image"],
        created_at=row["created_at"],
    )


async def create_product(
    db_path: str,
    name: str,
    brand: str,
    price: float,
    category: str,
    sizes: list[str],
    colors: list[str],
    stock: int = 0,
    description: str = "",
    gender: str = "unisex",
    image: str = "",
) -> Product:
    product = Product(
        id=new_id(),
        name=name,
        description=description,
        brand=brand,
        price=price,
        category=category,
        sizes=sizes,
        colors=colors,
        stock=stock,
        gender=gender,
        image=image,
    )
    async with connect(db_path) as db:
        await db.execute(
            "INSERT INTO products (id, name, description, brand, price, category, sizes, colors, stock, gender, image) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                product.id,
                product.name,
                product.description,
                product.brand,
                product.price,
                product.category,
                json.dumps(product.sizes),
                json.dumps(product.colors),
                product.stock,
                product.gender,
                product.image,
            ),
        )
    created = await get_product(db_path, product.id)
    if created is None:
        raise NotFoundError("Product not found")
    return created


async def get_product(db_path: str, product_id: str) -> Product | None:
    async with connect(db_path) as db:
        cursor = await db.execute("SELECT * FROM products WHERE id = ?", (product_id,))
        row = await cursor.fetchone()
        return _row_to_product(row) if row else None


async def get_products(db_path: str, product_ids: list[str]) -> dict[str, Product]:
    """Fetch several products at once, keyed by id. Unknown ids are left out."""
    if not product_ids:
        return {}
    unique_ids = list(dict.fromkeys(product_ids))
    placeholders = ", ".join("?" for _ in unique_ids)
    async with connect(db_path) as db:
        cursor = await db.execute(
            f"SELECT * FROM products WHERE id IN ({placeholders})", unique_ids
        )
        rows = await cursor.fetchall()
        return {row["id"]: _row_to_product(row) for row in rows}


async def find_products(
    db_path: str,
    category: str | None = None,
    name_or_brand: str | None = None,
    color: str | None = None,
    limit: int = 3,
) -> list[Product]:
    """Fuzzy catalog lookup used by the chat browser."""
    clauses: list[str] = []
    params: list = []
    if category:
        clauses.append("category LIKE ? ESCAPE '\\'")
        params.append(_contains(normalize_category(category)))
    if name_or_brand:
        clauses.append("(name LIKE ? ESCAPE '\\' OR brand LIKE ? ESCAPE '\\')")
        params.extend([_contains(name_or_brand), _contains(name_or_brand)])
    if color:
        clauses.append(
            "EXISTS (SELECT 1 FROM json_each(products.colors) WHERE json_each.value LIKE ? ESCAPE '\\')"
        )
        params.append(_contains(color))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    async with connect(db_path) as db:
        cursor = await db.execute(
            f"SELECT * FROM products {where} ORDER BY rowid LIMIT ?", (*params, limit)
        )
        rows = await cursor.fetchall()
        return [_row_to_product(row) for row in rows]


async def find_product_by_term(db_path: str, term: str) -> Product | None:
    """Resolve a shopper's product reference: by name, then brand, then description."""
    async with connect(db_path) as db:
        for column in ("name", "brand", "description"):
            cursor = await db.execute(
                f"SELECT * FROM products WHERE {column} LIKE ? ESCAPE '\\' ORDER BY rowid LIMIT 1",
                (_contains(term),),
            )
            row = await cursor.fetchone()
            if row is not None:
                return _row_to_product(row)
    return None


async def search_products(
    db_path: str,
    category: str | None = None,
    brand: str | None = None,
    gender: str | None = None,
    min_price: float | None = None,
    max_price: float | None = None,
    search: str | None = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 9,
) -> tuple[list[Product], int]:
    """Paginated catalog listing. Returns (products, total matching)."""
    clauses: list[str] = []
    params: list = []
    if category:
        clauses.append("category = ?")
        params.append(category)
    if brand:
        clauses.append("brand LIKE ? ESCAPE '\\'")
        params.append(_contains(brand))
    if gender:
        clauses.append("gender = ?")
        params.append(gender)
    if min_price is not None:
        clauses.append("price >= ?")
        params.append(min_price)
    if max_price is not None:
        clauses.append("price <= ?")
        params.append(max_price)
    if search:
        clauses.append(
            "(name LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\' "
            "OR brand LIKE ? ESCAPE '\\' OR category LIKE ? ESCAPE '\\')"
        )
        params.extend([_contains(search)] * 4)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    column = SORTABLE_FIELDS.get(sort_by, "created_at")
    direction = "ASC" if sort_order == "asc" else "DESC"

    async with connect(db_path) as db:
        cursor = await db.execute(f"SELECT COUNT(*) AS total FROM products {where}", params)
        total = (await cursor.fetchone())["total"]
        cursor = await db.execute(
            f"SELECT * FROM products {where} ORDER BY {column} {direction}, rowid {direction} "
            "LIMIT ? OFFSET ?",
            (*params, limit, (page - 1) * limit),
        )
        rows = await cursor.fetchall()
    return [_row_to_product(row) for row in rows], total


async def catalog_filters(db_path: str) -> dict[str, list[str]]:
    """Distinct category, brand and gender values for the listing filters."""
    filters = {}
    async with connect(db_path) as db:
        for key, column in (("categories", "category"), ("brands", "brand"), ("genders", "gender")):
            cursor = await db.execute(f"SELECT DISTINCT {column} FROM products ORDER BY {column}")
            filters[key] = [row[0] for row in await cursor.fetchall()]
    return filters


async def adjust_stock(db: aiosqlite.Connection, product_id: str, delta: int):
    """Relative stock change on an open connection; never read-then-write."""
    await db.execute(
        "UPDATE products SET stock = stock + ?, updated_at = datetime('now') WHERE id = ?",
        (delta, product_id),
    )
