import logging
import os
import re
from functools import lru_cache
from pathlib import Path

import boto3
from botocore.client import Config
from dotenv import dotenv_values

from app.core.config import settings as core_settings


logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@lru_cache(maxsize=1)
def _storage_config() -> dict[str, str]:
    env_path = Path(__file__).resolve().parents[2] / ".env"
    env_values = dotenv_values(env_path) if env_path.exists() else {}

    keys = [
        "DO_SPACES_KEY",
        "DO_SPACES_SECRET",
        "DO_SPACES_BUCKET",
        "DO_SPACES_REGION",
        "DO_SPACES_ENDPOINT",
    ]
    config: dict[str, str] = {}
    for key in keys:
        config[key] = (os.getenv(key) or env_values.get(key) or "").strip()
    return config


def safe_file_name(file_name: str) -> str:
    cleaned = _SAFE_NAME.sub("_", Path(file_name or "").name).strip("._")
    return cleaned or "recording"


def recording_key(organization_id: int, call_id: int, file_name: str) -> str:
    return f"recordings/org_{organization_id}/call_{call_id}/{safe_file_name(file_name)}"


def document_key(organization_id: int, file_name: str) -> str:
    return f"documents/org_{organization_id}/{safe_file_name(file_name)}"


def _spaces_client():
    config = _storage_config()
    required = [
        config["DO_SPACES_KEY"],
        config["DO_SPACES_SECRET"],
        config["DO_SPACES_BUCKET"],
        config["DO_SPACES_REGION"],
        config["DO_SPACES_ENDPOINT"],
    ]
    if any(not value for value in required):
        return None

    return boto3.session.Session().client(
        "s3",
        region_name=config["DO_SPACES_REGION"],
        endpoint_url=config["DO_SPACES_ENDPOINT"],
        aws_access_key_id=config["DO_SPACES_KEY"],
        aws_secret_access_key=config["DO_SPACES_SECRET"],
        config=Config(signature_version="s3v4"),
    )


def _local_path(key: str, root: str | Path) -> Path:
    root_path = Path(root).resolve()
    path = (root_path / key).resolve()
    if root_path not in path.parents:
        raise ValueError("storage key escapes storage root")
    return path


def save_bytes(
    key: str,
    file_bytes: bytes,
    *,
    content_type: str = "application/octet-stream",
    local_root: str | Path | None = None,
) -> dict[str, str | bool | None]:
    """
    Writes to local disk, mirrors to Spaces when configured.
    The local write is the source of truth and raises on failure; the mirror is best effort.
    """
    root = local_root if local_root is not None else core_settings.RECORDING_STORAGE_ROOT
    local_path = _local_path(key, root)
    local_path.parent.mkdir(parents=True, exist_ok=True)
    local_path.write_bytes(file_bytes)

    result: dict[str, str | bool | None] = {
        "key": key,
        "local_path": str(local_path),
        "spaces_saved": False,
        "bucket": _storage_config().get("DO_SPACES_BUCKET") or None,
    }

    client = _spaces_client()
    if client is not None:
        try:
            client.put_object(
                Bucket=_storage_config()["DO_SPACES_BUCKET"],
                Key=key,
                Body=file_bytes,
                ContentType=content_type,
            )
            result["spaces_saved"] = True
        except Exception:
            logger.warning("recording_storage: spaces mirror failed key=%s", key, exc_info=True)

    return result


def save_recording(
    *,
    organization_id: int,
    call_id: int,
    file_name: str,
    file_bytes: bytes,
    content_type: str,
    local_root: str | Path | None = None,
) -> dict[str, str | bool | None]:
    key = recording_key(organization_id, call_id, file_name)
    return save_bytes(key, file_bytes, content_type=content_type, local_root=local_root)


def save_document(
    *,
    organization_id: int,
    file_name: str,
    file_bytes: bytes,
    content_type: str = "application/pdf",
    local_root: str | Path | None = None,
) -> dict[str, str | bool | None]:
    root = local_root if local_root is not None else core_settings.DOCUMENT_STORAGE_ROOT
    key = document_key(organization_id, file_name)
    return save_bytes(key, file_bytes, content_type=content_type, local_root=root)


def read_local_file(path: str | Path) -> bytes:
    return Path(path).read_bytes()


def delete_local_file(path: str | Path | None) -> bool:
    if not path:
        return False
    target = Path(path)
    if not target.exists():
        return False
    target.unlink()
    return True


def generate_presigned_get_url(key: str, expires_seconds: int = 3600) -> str | None:
    client = _spaces_client()
    if client is None:
        return None
    try:
        return client.generate_presigned_url(
            "get_object",
            Params={"Bucket": _storage_config()["DO_SPACES_BUCKET"], "Key": key},
            ExpiresIn=expires_seconds,
        )
    except Exception:
        logger.warning("recording_storage: presign failed key=%s", key, exc_info=True)
        return None
