"""
entitlement_engine/models/plan.py

Plan and limit models for the entitlement catalog.

Plans are immutable to the engine: the administrative catalog editor writes
them, the engine only reads them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from pydantic import BaseModel, ConfigDict


class LimitKind(str, Enum):
    UNLIMITED = "unlimited"
    BOOLEAN = "boolean"
    COUNT = "count"


class LimitValue(BaseModel):
    """
    Resolved value of one feature limit inside a plan.

    Storage encoding (plan_limits.value JSON):
    - -1 or "unlimited" -> Unlimited
    - true / false      -> Boolean
    - n >= 0            -> Count(n)
    """
    model_config = ConfigDict(frozen=True)

    kind: LimitKind
    value: Optional[Union[bool, int]] = None

    @classmethod
    def unlimited(cls) -> "LimitValue":
        return cls(kind=LimitKind.UNLIMITED)

    @classmethod
    def boolean(cls, enabled: bool) -> "LimitValue":
        return cls(kind=LimitKind.BOOLEAN, value=bool(enabled))

    @classmethod
    def count(cls, n: int) -> "LimitValue":
        if n < 0:
            raise ValueError(f"Count limit must be >= 0, got {n}")
        return cls(kind=LimitKind.COUNT, value=int(n))

    @classmethod
    def from_json(cls, raw: Any) -> "LimitValue":
        # bool must be checked before int: isinstance(True, int) is True
        if isinstance(raw, bool):
            return cls.boolean(raw)
        if raw == "unlimited" or raw == -1:
            return cls.unlimited()
        if isinstance(raw, int) and raw >= 0:
            return cls.count(raw)
        raise ValueError(f"Unsupported limit encoding: {raw!r}")

    def to_json(self) -> Union[bool, int]:
        if self.kind == LimitKind.UNLIMITED:
            return -1
        return self.value

    @property
    def is_unlimited(self) -> bool:
        return self.kind == LimitKind.UNLIMITED

    def display(self) -> str:
        """Human label used by upgrade prompts."""
        if self.kind == LimitKind.UNLIMITED:
            return "Ilimitado"
        if self.kind == LimitKind.BOOLEAN:
            return "Incluido" if self.value else "No incluido"
        return str(self.value)


class Plan(BaseModel):
    """
    Catalog entry: a named bundle of feature limits and a monthly price.

    monthly_price is in integer minor units of `currency`.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    is_paid: bool = False
    monthly_price: int = 0
    currency: str = "ARS"
    is_default: bool = False
    created_at: Optional[datetime] = None
