"""
Pydantic request bodies for the admin API.
"""

from __future__ import annotations

from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class CalibrationPointIn(BaseModel):
    pixel: Tuple[float, float] = Field(..., description="Floor-plan coordinate (x, y)")
    geo: Tuple[float, float] = Field(..., description="WGS84 coordinate (lat, lon)")


class CalibrationIn(BaseModel):
    points: List[CalibrationPointIn] = Field(default_factory=list)


class AnchorIn(BaseModel):
    id: str = Field(..., description="Anchor node address")
    x: float
    y: float
    z: float = 0.0


class Bounds(BaseModel):
    width: float
    height: float


class FloorUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    plan_url: Optional[str] = Field(None, alias="planUrl")
    bounds: Optional[Bounds] = None
    calibration: Optional[CalibrationIn] = None
    anchors: Optional[List[AnchorIn]] = None

    def to_changes(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class ZoneIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    floor: int = 1
    type: Literal["general", "restricted"] = "general"
    polygon: List[Tuple[float, float]] = Field(..., min_length=3)
    alert_on_enter: bool = Field(True, alias="alertOnEnter")
    alert_on_exit: bool = Field(True, alias="alertOnExit")

    def to_config(self) -> dict:
        # json mode turns tuples into lists, which safe_load can read back
        return self.model_dump(mode="json")
