from fastapi import APIRouter, Depends
from pydantic import BaseModel

from polly.security import Role, RoleCheck, require_role

router = APIRouter(prefix="/users", tags=["users"])


class Me(BaseModel):
    id: str
    email: str
    role: Role


@router.get("/me", response_model=Me)
def me(check: RoleCheck = Depends(require_role(Role.USER, Role.MODERATOR, Role.ADMIN))) -> Me:
    return Me(id=check.user.id, email=check.user.email, role=check.role)
