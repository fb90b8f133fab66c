from typing import Generator, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from mocflow.db.session import get_session_factory
from mocflow.services.directory import UserDirectory, UserInfo


def get_db() -> Generator:
    """Database session dependency."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None),
) -> UserInfo:
    """Resolve the acting user from the identity header set by the gateway."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing or unknown X-User-Id header",
    )
    if not x_user_id:
        raise credentials_exception
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise credentials_exception

    user = UserDirectory(db).find(user_id)
    # End the lookup transaction; on SQLite it holds the write lock.
    db.rollback()
    if user is None:
        raise credentials_exception
    return user
