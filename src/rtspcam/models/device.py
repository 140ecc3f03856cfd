"""Capture device model.

A Device is produced by one inventory run and never mutated. ``index`` is
the 0-based position among unique names in first-seen order; ``raw_name``
is the exact identifier the capture command needs after ``video=``.
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Device(BaseModel):
    """Capture device discovered by DeviceInventory."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(
        ge=0,
        description="Position in the inventory (0-based, first-seen order)"
    )

    name: str = Field(
        min_length=1,
        description="Display name",
        examples=["Integrated Webcam", "USB Video Device"]
    )

    raw_name: str = Field(
        min_length=1,
        description="Identifier passed to the capture backend"
    )

    @property
    def label(self) -> str:
        """Menu label, 1-based."""
        return f"{self.index + 1}. {self.name}"
