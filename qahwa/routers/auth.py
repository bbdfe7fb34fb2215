import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from qahwa.schemas.common import Token
from qahwa.util.security import create_token, verify_pw
from qahwa.models.core import User
from qahwa.db import get_db

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

@router.post("/login", response_model=Token)
def login(mobile: str, password: str, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.mobile == mobile, User.active.is_(True)).first()
    if not user or not verify_pw(user.pass_hash, password):
        logger.warning(f"Failed login for {mobile}")
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return Token(access_token=create_token(user.id, user.tenant_id))
