from fastapi import APIRouter, Depends

from ..auth import gateway_user, require_gateway_login, require_login

router = APIRouter()

@router.get("/")
async def root():
    return {"message": "Welcome"}

@router.get("/protected")
async def protected(user: str = Depends(gateway_user)):
    # Silent CAS check on this very URL; anonymous visitors are let in too
    return {"user": user}

@router.get("/news")
async def news(user: str = Depends(require_gateway_login)):
    return {"user": user}

@router.get("/account")
async def account(user: str = Depends(require_login)):
    return {"user": user}
