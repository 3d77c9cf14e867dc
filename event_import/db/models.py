"""
ORM models for catalogs, datasets, schema versions, import files, import
jobs and the events they produce.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, validates

from event_import.db.session import Base
from event_import.domain.imports.stages import ProcessingStage, coerce_stage


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


IMPORT_FILE_STATUSES = ("pending", "processing", "completed", "failed", "skipped")

DEFAULT_ID_STRATEGY = {
    "type": "auto",
    "externalIdPath": None,
    "computedIdFields": [],
    "duplicateStrategy": "skip",
}


class Catalog(Base):
    __tablename__ = "catalogs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    datasets = relationship("Dataset", back_populates="catalog")


class Dataset(Base):
    __tablename__ = "datasets"

    id = Column(Integer, primary_key=True, index=True)
    catalog_id = Column(Integer, ForeignKey("catalogs.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    language = Column(String(3), nullable=False, default="eng")
    import_transforms = Column(JSON, nullable=False, default=list)
    type_transformations = Column(JSON, nullable=False, default=list)
    id_strategy = Column(JSON, nullable=False, default=lambda: dict(DEFAULT_ID_STRATEGY))
    schema_locked = Column(Boolean, nullable=False, default=False)
    schema_auto_grow = Column(Boolean, nullable=False, default=True)
    geocoding_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    catalog = relationship("Catalog", back_populates="datasets")


class DatasetSchema(Base):
    """Append-only schema snapshot; a regeneration adds a new version."""

    __tablename__ = "dataset_schemas"
    __table_args__ = (UniqueConstraint("dataset_id", "version_number", name="uq_dataset_schema_version"),)

    id = Column(Integer, primary_key=True, index=True)
    dataset_id = Column(Integer, ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    schema = Column(JSON, nullable=False)
    field_metadata = Column(JSON, nullable=False, default=dict)
    schema_summary = Column(JSON, nullable=False, default=dict)
    event_count_at_creation = Column(Integer, nullable=False, default=0)
    auto_approved = Column(Boolean, nullable=False, default=False)
    approved_by = Column(String(255))
    approved_at = Column(DateTime(timezone=True))
    # Job that produced the version; plain column to keep the table graph acyclic
    import_job_id = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ImportFile(Base):
    __tablename__ = "import_files"

    id = Column(Integer, primary_key=True, index=True)
    catalog_id = Column(Integer, ForeignKey("catalogs.id", ondelete="CASCADE"), nullable=False, index=True)
    file_name = Column(String(512), nullable=False)
    content = Column(LargeBinary, nullable=False)
    content_hash = Column(String(64), index=True)
    source_key = Column(String(512), index=True)
    # Optional explicit sheet name -> dataset id assignment
    dataset_mapping = Column(JSON)
    status = Column(String(32), nullable=False, default="pending")
    is_duplicate = Column(Boolean, nullable=False, default=False)
    skip_reason = Column(Text)
    duplicate_of_id = Column(Integer, ForeignKey("import_files.id", ondelete="SET NULL"))
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True))

    jobs = relationship("ImportJob", back_populates="import_file", order_by="ImportJob.id")

    @validates("status")
    def _validate_status(self, key, value):
        if value not in IMPORT_FILE_STATUSES:
            raise ValueError(f"Invalid import file status: {value}")
        return value


class ImportJob(Base):
    """One pipeline run for one sheet/dataset pairing of an import file."""

    __tablename__ = "import_jobs"

    id = Column(Integer, primary_key=True, index=True)
    import_file_id = Column(Integer, ForeignKey("import_files.id", ondelete="CASCADE"), nullable=False, index=True)
    dataset_id = Column(Integer, ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True)
    sheet_index = Column(Integer, nullable=False, default=0)
    sheet_name = Column(String(255))
    stage = Column(
        Enum(
            ProcessingStage,
            name="processing_stage",
            native_enum=False,
            create_constraint=True,
            validate_strings=True,
            length=32,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
        default=ProcessingStage.DETECT_SCHEMA,
        index=True,
    )
    last_successful_stage = Column(String(32))
    retry_attempts = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime(timezone=True))
    next_retry_at = Column(DateTime(timezone=True), index=True)

    progress = Column(JSON, nullable=False, default=dict)
    schema = Column(JSON)
    schema_builder_state = Column(JSON)
    schema_validation = Column(JSON)
    detected_field_mappings = Column(JSON)
    duplicates = Column(JSON)
    geocoding_results = Column(JSON)
    errors = Column(JSON, nullable=False, default=list)
    error_log = Column(JSON)
    results = Column(JSON)
    dataset_schema_id = Column(Integer, ForeignKey("dataset_schemas.id", ondelete="SET NULL"))

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True))

    import_file = relationship("ImportFile", back_populates="jobs")
    dataset = relationship("Dataset")

    @validates("stage")
    def _validate_stage(self, key, value):
        return coerce_stage(value)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (UniqueConstraint("dataset_id", "unique_id", name="uq_event_dataset_unique_id"),)

    id = Column(Integer, primary_key=True, index=True)
    dataset_id = Column(Integer, ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True)
    import_job_id = Column(Integer, ForeignKey("import_jobs.id", ondelete="SET NULL"), index=True)
    unique_id = Column(String(512), nullable=False)
    content_hash = Column(String(64), nullable=False, index=True)
    source_row_number = Column(Integer)
    data = Column(JSON, nullable=False)
    title = Column(Text)
    description = Column(Text)
    event_timestamp = Column(DateTime(timezone=True))
    latitude = Column(Float)
    longitude = Column(Float)
    location_source = Column(String(32))
    geocoding_info = Column(JSON)
    validation_status = Column(String(32), nullable=False, default="valid")
    validation_errors = Column(JSON)
    transformations = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
