from fastapi import APIRouter, Depends

from polly.security import Role, RoleCheck, with_role_protection

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("")
def admin_home(check: RoleCheck = Depends(with_role_protection(Role.ADMIN, redirect_to="/"))):
    return {"section": "admin", "managed_by": check.user.email}


@router.get("/dashboard")
def dashboard(check: RoleCheck = Depends(with_role_protection(Role.ADMIN))):
    return {"managed_by": check.user.email, "role": check.role.value}


@router.get("/moderation")
def moderation(check: RoleCheck = Depends(with_role_protection([Role.ADMIN, Role.MODERATOR]))):
    return {"moderator": check.user.email, "role": check.role.value}
