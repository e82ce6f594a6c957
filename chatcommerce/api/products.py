import math

from fastapi import APIRouter, Depends, HTTPException, Query

from chatcommerce.dependecies import get_db_path
from chatcommerce.models.catalog import catalog_filters, get_product, search_products
from chatcommerce.models.schemas import ok

router = APIRouter(prefix="/api/products", tags=["products"])


@router.get("")
async def list_products(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=9, ge=1, le=100),
    category: str | None = None,
    brand: str | None = None,
    gender: str | None = None,
    min_price: float | None = Query(default=None, alias="minPrice", ge=0),
    max_price: float | None = Query(default=None, alias="maxPrice", ge=0),
    search: str | None = None,
    sort_by: str = Query(default="createdAt", alias="sortBy"),
    sort_order: str = Query(default="desc", alias="sortOrder"),
    db_path: str = Depends(get_db_path),
):
    products, total = await search_products(
        db_path,
        category=category,
        brand=brand,
        gender=gender,
        min_price=min_price,
        max_price=max_price,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    total_pages = math.ceil(total / limit)
    return ok({
        "products": [p.to_payload() for p in products],
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalProducts": total,
            "hasNextPage": page < total_pages,
            "hasPrevPage": page > 1,
        },
        "filters": await catalog_filters(db_path),
    })


@router.get("/{product_id}")
async def get_product_detail(product_id: str, db_path: str = Depends(get_db_path)):
    product = await get_product(db_path, product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return ok(product.to_payload())
