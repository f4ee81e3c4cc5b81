# ABOUTME: Products endpoint
# ABOUTME: Returns a single CN product by CN number, metered per API key

from fastapi import APIRouter, Depends, HTTPException
from cn_api.dependencies import verify_api_key, get_db
from cn_api.models.database import CNProduct
from cn_api.models.errors import METERED, NOT_FOUND
from cn_api.models.schemas import AuthResult

router = APIRouter(tags=["products"])


def serialize_product(product: CNProduct) -> dict:
    return {
        "cn_number": product.cn_number,
        "product_name": product.product_name,
        "category": product.category,
        "manufacturer": product.manufacturer,
        "serving_size": product.serving_size,
        "nutrition_data": product.nutrition_data,
    }


@router.get("/products/{cn_number}", responses={
    200: {"description": "Product details", "content": {"application/json": {"example": {
        "data": {"cn_number": "000001", "product_name": "Chicken Nuggets", "category": "Entree",
                 "manufacturer": "Acme Foods", "serving_size": "5 pieces",
                 "nutrition_data": {"calories": 220, "protein": 13}},
        "meta": {"usage": {"current": 12, "limit": 1000, "remaining": 988, "percentUsed": 1.2}}
    }}}},
    **METERED,
    **NOT_FOUND,
})
async def get_product(
    cn_number: str,
    auth: AuthResult = Depends(verify_api_key),
    db = Depends(get_db)
):
    """Returns the product with the given CN number."""
    product = db.query(CNProduct).filter(CNProduct.cn_number == cn_number).first()

    if not product:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": f"Product with CN number {cn_number} not found"}
        )

    return {
        "data": serialize_product(product),
        "meta": {"usage": auth.usage.as_response()}
    }
