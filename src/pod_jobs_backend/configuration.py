from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

CONFIG_ENV_VAR = "POD_JOBS_CONFIG"

# Every leaf can be overridden by the environment variable it names, by a YAML
# file pointed to by POD_JOBS_CONFIG, or by explicit overrides (tests).
DEFAULT_CONFIG_YAML = """
database:
  path: ${oc.env:POD_JOBS_DB_PATH,data/pod_jobs.db}
webhook:
  timeout_seconds: ${oc.decode:${oc.env:WEBHOOK_TIMEOUT_SECONDS,10}}
  retry_delay_seconds: ${oc.decode:${oc.env:WEBHOOK_RETRY_DELAY_SECONDS,2}}
  signing_secret: ${oc.env:WEBHOOK_SIGNING_SECRET,""}
  max_workers: ${oc.decode:${oc.env:WEBHOOK_MAX_WORKERS,4}}
merge_check:
  probe_timeout_seconds: ${oc.decode:${oc.env:MERGE_PROBE_TIMEOUT_SECONDS,5}}
sweeper:
  stale_after_seconds: ${oc.decode:${oc.env:SWEEPER_STALE_AFTER_SECONDS,900}}
  done_retention_seconds: ${oc.decode:${oc.env:QUEUE_DONE_RETENTION_SECONDS,86400}}
  interval_seconds: ${oc.decode:${oc.env:SWEEPER_INTERVAL_SECONDS,0}}
auth:
  api_keys: ${oc.env:API_KEYS,""}
storage:
  s3_bucket: ${oc.env:S3_BUCKET_NAME,""}
  presign_expiration_seconds: ${oc.decode:${oc.env:S3_PRESIGN_EXPIRATION_SECONDS,3600}}
"""


@dataclass(frozen=True)
class Settings:
    database_path: Path
    webhook_timeout_seconds: float
    webhook_retry_delay_seconds: float
    webhook_signing_secret: str
    webhook_max_workers: int
    probe_timeout_seconds: float
    sweeper_stale_after_seconds: float
    sweeper_interval_seconds: float
    queue_done_retention_seconds: float
    api_keys: Tuple[str, ...]
    s3_bucket: str
    presign_expiration_seconds: int


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    return OmegaConf.create(DEFAULT_CONFIG_YAML)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    layers = [base]
    config_file = os.environ.get(CONFIG_ENV_VAR)
    if config_file:
        layers.append(OmegaConf.load(config_file))
    if overrides:
        layers.append(OmegaConf.create(overrides))
    return DictConfig(OmegaConf.merge(*layers))


def _split_keys(raw: Any) -> Tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, (list, tuple)):
        items = raw
    else:
        items = str(raw).split(",")
    return tuple(key.strip() for key in items if str(key).strip())


def build_settings(config: DictConfig) -> Settings:
    resolved: Dict[str, Any] = OmegaConf.to_container(config, resolve=True)  # type: ignore[assignment]
    return Settings(
        database_path=Path(resolved["database"]["path"]),
        webhook_timeout_seconds=float(resolved["webhook"]["timeout_seconds"]),
        webhook_retry_delay_seconds=float(resolved["webhook"]["retry_delay_seconds"]),
        webhook_signing_secret=str(resolved["webhook"]["signing_secret"] or ""),
        webhook_max_workers=int(resolved["webhook"]["max_workers"]),
        probe_timeout_seconds=float(resolved["merge_check"]["probe_timeout_seconds"]),
        sweeper_stale_after_seconds=float(resolved["sweeper"]["stale_after_seconds"]),
        sweeper_interval_seconds=float(resolved["sweeper"]["interval_seconds"]),
        queue_done_retention_seconds=float(resolved["sweeper"]["done_retention_seconds"]),
        api_keys=_split_keys(resolved["auth"]["api_keys"]),
        s3_bucket=str(resolved["storage"]["s3_bucket"] or ""),
        presign_expiration_seconds=int(resolved["storage"]["presign_expiration_seconds"]),
    )


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return build_settings(make_runtime_config())
