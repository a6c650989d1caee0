from enum import Enum
from pydantic import BaseModel, ConfigDict

class Role(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"

class Principal(BaseModel):
    """Authenticated caller as handed over by the auth layer"""
    id: str
    role: Role = Role.CUSTOMER

    model_config = ConfigDict(frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def owns(self, user_id: str) -> bool:
        return self.id == user_id
