from enum import StrEnum

from sqlalchemy import JSON, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from kincare.models.base import Base, TimestampMixin


class IdentityRole(StrEnum):
    patient = "patient"
    family_member = "family_member"


class Identity(Base, TimestampMixin):
    """A person known to the system, plus the derived membership index.

    ``linked_patient_ids``, ``family_member_ids`` and ``primary_patient_id``
    are a cache of active access records. They are written only by the
    index synchronizer and can always be rebuilt from the record store.
    """

    __tablename__ = "identities"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    email: Mapped[str] = mapped_column(
        String(255),
        index=True,
        nullable=False,
        comment="Login email, stored lower-cased",
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=IdentityRole.patient.value,
        server_default="patient",
        comment="Identity role: patient, family_member",
    )
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)

    linked_patient_ids: Mapped[list[int]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Patients this family member can access (derived)",
    )
    family_member_ids: Mapped[list[int]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Family members with access to this patient (derived)",
    )
    primary_patient_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Set when the family member is linked to exactly one patient",
    )

    __table_args__ = (UniqueConstraint("email", name="uq_identities_email"),)

    @property
    def is_patient(self) -> bool:
        return self.role == IdentityRole.patient

    def __repr__(self) -> str:
        return f"<Identity(id={self.id}, email='{self.email}', role={self.role})>"
