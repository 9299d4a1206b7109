from src.models.user import TokenKind, User, UserCreate, UserRead

__all__ = [
    "TokenKind",
    "User",
    "UserCreate",
    "UserRead",
]
