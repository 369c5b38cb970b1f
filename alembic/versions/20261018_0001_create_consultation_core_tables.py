"""create identity, consultation and prescription tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


identity_role = sa.Enum("patient", "clinician", "pharmacy_operator", "admin", name="identity_role")
challenge_status = sa.Enum("pending", "verified", "expired", "locked", name="challenge_status")
clinician_type = sa.Enum("generalist", "specialist", name="clinician_type")
encounter_status = sa.Enum(
    "requested", "matched", "active", "extended", "completed", "cancelled", name="encounter_status"
)
prescription_status = sa.Enum("active", "claimed", "fulfilled", "expired", name="prescription_status")
claim_status = sa.Enum("ready", "dispensed", "disputed", name="claim_status")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "identities",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("phone_number", sa.String(length=32), nullable=False),
        sa.Column("role", identity_role, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("phone_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_identities_phone_number", "identities", ["phone_number"], unique=True)

    op.create_table(
        "one_time_challenges",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("phone_number", sa.String(length=32), nullable=False),
        sa.Column("code_hash", sa.String(length=255), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", challenge_status, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("message_id", sa.String(length=128), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_one_time_challenges_phone_number", "one_time_challenges", ["phone_number"])
    op.create_index(
        "uq_one_time_challenges_pending_phone",
        "one_time_challenges",
        ["phone_number"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "clinicians",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("identity_id", sa.String(length=36), nullable=False),
        sa.Column("clinician_type", clinician_type, nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("specialty", sa.String(length=128), nullable=True),
        sa.Column("license_number", sa.String(length=64), nullable=False),
        sa.Column("whatsapp_number", sa.String(length=32), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("active_load", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["identity_id"], ["identities.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("identity_id"),
        sa.UniqueConstraint("license_number"),
        sa.CheckConstraint("active_load >= 0", name="ck_clinicians_active_load_non_negative"),
    )
    op.create_index(
        "ix_clinicians_type_active_load", "clinicians", ["clinician_type", "is_active", "active_load"]
    )

    op.create_table(
        "encounters",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("patient_id", sa.String(length=36), nullable=False),
        sa.Column("clinician_id", sa.String(length=36), nullable=True),
        sa.Column("required_type", clinician_type, nullable=False),
        sa.Column("status", encounter_status, nullable=False),
        sa.Column("intake_summary", sa.JSON(), nullable=False),
        sa.Column("red_flags", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("time_box_minutes", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("extension_applied", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("extension_reason", sa.String(length=255), nullable=True),
        sa.Column("cancel_reason", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["patient_id"], ["identities.id"]),
        sa.ForeignKeyConstraint(["clinician_id"], ["clinicians.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_encounters_patient_id", "encounters", ["patient_id"])
    op.create_index("ix_encounters_clinician_id_status", "encounters", ["clinician_id", "status"])

    op.create_table(
        "encounter_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("encounter_id", sa.String(length=36), nullable=False),
        sa.Column("sender_id", sa.String(length=36), nullable=False),
        sa.Column("sender_role", identity_role, nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["encounter_id"], ["encounters.id"]),
        sa.ForeignKeyConstraint(["sender_id"], ["identities.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_encounter_messages_encounter_id_sent_at", "encounter_messages", ["encounter_id", "sent_at"]
    )

    op.create_table(
        "prescriptions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("encounter_id", sa.String(length=36), nullable=False),
        sa.Column("clinician_id", sa.String(length=36), nullable=False),
        sa.Column("patient_id", sa.String(length=36), nullable=False),
        sa.Column("redemption_token", sa.String(length=128), nullable=False),
        sa.Column("redemption_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("status", prescription_status, nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("document_url", sa.Text(), nullable=True),
        sa.Column("document_downloaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fulfilled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fulfilling_pharmacy_id", sa.String(length=36), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["encounter_id"], ["encounters.id"]),
        sa.ForeignKeyConstraint(["clinician_id"], ["clinicians.id"]),
        sa.ForeignKeyConstraint(["patient_id"], ["identities.id"]),
        sa.ForeignKeyConstraint(["fulfilling_pharmacy_id"], ["identities.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("encounter_id"),
        sa.UniqueConstraint("redemption_token"),
    )
    op.create_index("ix_prescriptions_patient_id", "prescriptions", ["patient_id"])

    op.create_table(
        "prescription_items",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("prescription_id", sa.String(length=36), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("drug_name", sa.String(length=255), nullable=False),
        sa.Column("strength", sa.String(length=64), nullable=False),
        sa.Column("form", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("instructions", sa.Text(), nullable=False),
        sa.Column("substitution_allowed", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["prescription_id"], ["prescriptions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("quantity >= 1", name="ck_prescription_items_quantity_positive"),
    )
    op.create_index("ix_prescription_items_prescription_id", "prescription_items", ["prescription_id"])

    op.create_table(
        "redemption_claims",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("prescription_id", sa.String(length=36), nullable=False),
        sa.Column("pharmacy_id", sa.String(length=36), nullable=False),
        sa.Column("status", claim_status, nullable=False),
        sa.Column("dispensed_items", sa.JSON(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispensed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["prescription_id"], ["prescriptions.id"]),
        sa.ForeignKeyConstraint(["pharmacy_id"], ["identities.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_redemption_claims_prescription_pharmacy", "redemption_claims", ["prescription_id", "pharmacy_id"]
    )
    op.create_index(
        "uq_redemption_claims_dispensed_prescription",
        "redemption_claims",
        ["prescription_id"],
        unique=True,
        postgresql_where=sa.text("status = 'dispensed'"),
        sqlite_where=sa.text("status = 'dispensed'"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.String(length=36), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("resource_type", sa.String(length=64), nullable=False),
        sa.Column("resource_id", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_resource", "audit_events", ["resource_type", "resource_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_resource", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_index("uq_redemption_claims_dispensed_prescription", table_name="redemption_claims")
    op.drop_index("ix_redemption_claims_prescription_pharmacy", table_name="redemption_claims")
    op.drop_table("redemption_claims")

    op.drop_index("ix_prescription_items_prescription_id", table_name="prescription_items")
    op.drop_table("prescription_items")

    op.drop_index("ix_prescriptions_patient_id", table_name="prescriptions")
    op.drop_table("prescriptions")

    op.drop_index("ix_encounter_messages_encounter_id_sent_at", table_name="encounter_messages")
    op.drop_table("encounter_messages")

    op.drop_index("ix_encounters_clinician_id_status", table_name="encounters")
    op.drop_index("ix_encounters_patient_id", table_name="encounters")
    op.drop_table("encounters")

    op.drop_index("ix_clinicians_type_active_load", table_name="clinicians")
    op.drop_table("clinicians")

    op.drop_index("uq_one_time_challenges_pending_phone", table_name="one_time_challenges")
    op.drop_index("ix_one_time_challenges_phone_number", table_name="one_time_challenges")
    op.drop_table("one_time_challenges")

    op.drop_index("ix_identities_phone_number", table_name="identities")
    op.drop_table("identities")

    op.execute("DROP TYPE IF EXISTS claim_status")
    op.execute("DROP TYPE IF EXISTS prescription_status")
    op.execute("DROP TYPE IF EXISTS encounter_status")
    op.execute("DROP TYPE IF EXISTS clinician_type")
    op.execute("DROP TYPE IF EXISTS challenge_status")
    op.execute("DROP TYPE IF EXISTS identity_role")
