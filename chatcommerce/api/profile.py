from fastapi import APIRouter, Depends, HTTPException

from chatcommerce.dependecies import get_current_user, get_db_path
from chatcommerce.models.database import update_profile
from chatcommerce.models.schemas import ProfileUpdateRequest, User, ok

router = APIRouter(prefix="/api/profile", tags=["profile"])


@router.get("")
async def get_profile(user: User = Depends(get_current_user)):
    return ok(user.to_payload())


@router.put("")
async def update_user_profile(
    body: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    if not body.name.strip() or not body.shipping_address.is_complete():
        raise HTTPException(status_code=400, detail="Name and complete shipping address are required")

    updated = await update_profile(db_path, user.id, body.name, body.phone, body.shipping_address)
    if updated is None:
        raise HTTPException(status_code=404, detail="User not found")
    return ok(updated.to_payload(), "Profile updated successfully")
