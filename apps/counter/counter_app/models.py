from __future__ import annotations
from enum import Enum
from typing import Any
from pydantic import BaseModel


class CountAction(str, Enum):
    INCREMENT = "inc"
    CLEAR = "clear"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "CountAction":
        # "unknown" is never accepted from the wire, only produced here
        if value == cls.INCREMENT.value:
            return cls.INCREMENT
        if value == cls.CLEAR.value:
            return cls.CLEAR
        return cls.UNKNOWN


class CountResponse(BaseModel):
    code: int = 0
    data: int


class HealthResponse(BaseModel):
    status: str
    store: str


class VersionResponse(BaseModel):
    service: str
    build_version: str
    build_time: str
