import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Column, DateTime, String, create_engine, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .errors import ConflictError, NotFoundError, PersistenceError
from .models import Job, JobStatus

logger = logging.getLogger("dynwall-backend")

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WallpaperORM(Base):
    __tablename__ = "wallpapers"
    id = Column(String, primary_key=True)
    status = Column(String, nullable=False, index=True)
    light_input_path = Column(String, nullable=False)
    dark_input_path = Column(String, nullable=False)
    final_url = Column(String)
    preview_url = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True))


def _to_job(row: WallpaperORM) -> Job:
    return Job(
        id=row.id,
        status=JobStatus(row.status),
        light_input_path=row.light_input_path,
        dark_input_path=row.dark_input_path,
        final_url=row.final_url or None,
        preview_url=row.preview_url or None,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def make_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite:///"):
        path = database_url[len("sqlite:///"):]
        if path and os.path.dirname(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


class JobStore:
    """Durable job records, one row per job id.

    Every mutation is a single-row statement; no locking beyond that is
    needed while one worker owns a job at a time.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        # Keep attributes readable after commit, outside the session block.
        self.Session = sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )

    def init_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def create(self, job: Job) -> Job:
        row = WallpaperORM(
            id=job.id,
            status=job.status.value,
            light_input_path=job.light_input_path,
            dark_input_path=job.dark_input_path,
            final_url=job.final_url,
            preview_url=job.preview_url,
            created_at=job.created_at,
            updated_at=job.created_at,
        )
        try:
            with self.Session() as db:
                db.add(row)
                db.commit()
        except IntegrityError as e:
            raise ConflictError(f"job {job.id} already exists") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not create job {job.id}: {e}") from e
        return _to_job(row)

    def get(self, job_id: str) -> Job:
        try:
            with self.Session() as db:
                row = db.get(WallpaperORM, job_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not load job {job_id}: {e}") from e
        if row is None:
            raise NotFoundError(f"job {job_id} not found")
        return _to_job(row)

    def _update(self, job_id: str, values: dict) -> None:
        values["updated_at"] = _utcnow()
        stmt = update(WallpaperORM).where(WallpaperORM.id == job_id).values(**values)
        try:
            with self.Session() as db:
                result = db.execute(stmt)
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not update job {job_id}: {e}") from e
        if result.rowcount == 0:
            raise NotFoundError(f"job {job_id} not found")

    def update_status(self, job_id: str, status: JobStatus) -> None:
        self._update(job_id, {"status": JobStatus(status).value})

    def update_completion(self, job_id: str, final_url: str, preview_url: Optional[str]) -> None:
        # Status and both URLs land in one statement.
        self._update(
            job_id,
            {
                "status": JobStatus.COMPLETED.value,
                "final_url": final_url,
                "preview_url": preview_url,
            },
        )

    def list_by_status(self, status: JobStatus, newest_first: bool = True) -> List[Job]:
        order = WallpaperORM.created_at.desc() if newest_first else WallpaperORM.created_at.asc()
        try:
            with self.Session() as db:
                rows = (
                    db.query(WallpaperORM)
                    .filter(WallpaperORM.status == JobStatus(status).value)
                    .order_by(order)
                    .all()
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not list {status} jobs: {e}") from e
        return [_to_job(r) for r in rows]

    def list_stuck(self) -> List[Job]:
        return self.list_by_status(JobStatus.PROCESSING, newest_first=False)
