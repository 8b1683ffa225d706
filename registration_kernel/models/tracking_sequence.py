"""
Module: registration_kernel.models.tracking_sequence
Responsibility: Per-year counter rows backing ``YYYY-NNNNN`` tracking numbers.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One row per year (unique).  TrackingNumberService locks the row
      with SELECT ... FOR UPDATE before incrementing.
"""

from sqlalchemy import Integer
from sqlalchemy.orm import Mapped, mapped_column

from registration_kernel.db.base import Base


class TrackingSequenceModel(Base):
    """Counter for one calendar year."""

    __tablename__ = "registration_tracking_sequences"

    year: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
