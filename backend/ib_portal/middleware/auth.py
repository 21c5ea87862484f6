"""
认证中间件

管理端接口只接受认证服务签发的 Access Token（type: "access"），
并要求 role 在 ADMIN_ROLES 中。本服务不管理账号密码。
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from ib_portal.config import settings
from ib_portal.utils.timeutils import utc_now

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@dataclass
class AdminPrincipal:
    username: str
    role: str


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """创建访问令牌（运维脚本与测试使用）"""
    to_encode = data.copy()
    expire = utc_now() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


async def get_current_admin(token: str = Depends(oauth2_scheme)) -> AdminPrincipal:
    """校验 Access Token 并返回管理员身份"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise credentials_exception

    if payload.get("type", "access") != "access":
        raise credentials_exception
    username = payload.get("sub")
    if username is None:
        raise credentials_exception

    role = payload.get("role") or ""
    if role not in settings.ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions",
        )
    return AdminPrincipal(username=username, role=role)
