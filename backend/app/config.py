import os
import tempfile
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "wallpaper_jobs"
    queue_poll_timeout: int = 5
    queue_retry_delay: float = 1.0

    storage_backend: str = "r2"
    r2_account_id: Optional[str] = None
    s3_endpoint: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_region: str = "auto"
    bucket_name: Optional[str] = None
    public_url: Optional[str] = None

    data_dir: str = os.path.join(os.getcwd(), "data")
    work_root: str = tempfile.gettempdir()
    enable_preview: bool = True
    keep_failed_workdirs: bool = False
    stage_timeout_seconds: float = 300.0
    completion_write_attempts: int = 3
    recover_stuck_on_start: bool = True

    exiv2_bin: str = "exiv2"
    heif_enc_bin: str = "heif-enc"
    convert_bin: str = "convert"
    preview_max_size: int = 1024

    app_origin: str = "http://localhost:3000"
    static_dir: Optional[str] = None
    log_level: str = "INFO"

    @property
    def storage_endpoint(self) -> Optional[str]:
        # An explicit endpoint wins over the one derived from the R2 account.
        if self.s3_endpoint:
            return self.s3_endpoint
        if self.r2_account_id:
            return f"https://{self.r2_account_id}.r2.cloudflarestorage.com"
        return None

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir = os.getenv("DATA_DIR") or os.path.join(os.getcwd(), "data")
        return cls(
            database_url=os.getenv(
                "DATABASE_URL", f"sqlite:///{os.path.join(data_dir, 'dev.sqlite')}"
            ),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            queue_name=os.getenv("QUEUE_NAME", "wallpaper_jobs"),
            queue_poll_timeout=int(os.getenv("QUEUE_POLL_TIMEOUT", "5")),
            queue_retry_delay=float(os.getenv("QUEUE_RETRY_DELAY", "1")),
            storage_backend=os.getenv("STORAGE_BACKEND", "r2").lower(),
            r2_account_id=_env_str("R2_ACCOUNT_ID"),
            s3_endpoint=_env_str("S3_ENDPOINT"),
            s3_access_key=_env_str("R2_ACCESS_KEY_ID"),
            s3_secret_key=_env_str("R2_SECRET_ACCESS_KEY"),
            s3_region=os.getenv("S3_REGION", "auto"),
            bucket_name=_env_str("R2_BUCKET_NAME"),
            public_url=_env_str("R2_PUBLIC_URL"),
            data_dir=data_dir,
            work_root=os.getenv("WORK_ROOT") or tempfile.gettempdir(),
            enable_preview=_env_bool("ENABLE_PREVIEW", "true"),
            keep_failed_workdirs=_env_bool("KEEP_FAILED_WORKDIRS", "false"),
            stage_timeout_seconds=float(os.getenv("STAGE_TIMEOUT_SECONDS", "300")),
            completion_write_attempts=int(os.getenv("COMPLETION_WRITE_ATTEMPTS", "3")),
            recover_stuck_on_start=_env_bool("RECOVER_STUCK_ON_START", "true"),
            exiv2_bin=os.getenv("EXIV2_BIN", "exiv2"),
            heif_enc_bin=os.getenv("HEIF_ENC_BIN", "heif-enc"),
            convert_bin=os.getenv("CONVERT_BIN", "convert"),
            preview_max_size=int(os.getenv("PREVIEW_MAX_SIZE", "1024")),
            app_origin=os.getenv("APP_ORIGIN", "http://localhost:3000"),
            static_dir=_env_str("STATIC_DIR"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
