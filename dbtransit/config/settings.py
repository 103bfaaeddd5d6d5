#!/usr/bin/env python3
"""
dbtransit Configuration
Runtime settings and driver credentials, read from the environment once
and passed explicitly to the registry and the copy runner.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


@dataclass
class TransitConfig:
    """dbtransit runtime settings"""

    max_streams: int = 4
    max_retries: int = 3
    retry_delay: float = 0.5
    buffer_chunks: int = 4
    log_level: str = "INFO"
    temp_dir: Optional[str] = None

    # Environment overrides; tests pass a dict instead of os.environ
    environ: Mapping[str, str] = field(default=None, repr=False)

    def __post_init__(self):
        """Apply DBTRANSIT_* environment overrides"""
        env = os.environ if self.environ is None else self.environ
        self.max_streams = int(env.get('DBTRANSIT_MAX_STREAMS', self.max_streams))
        self.max_retries = int(env.get('DBTRANSIT_MAX_RETRIES', self.max_retries))
        self.retry_delay = float(env.get('DBTRANSIT_RETRY_DELAY', self.retry_delay))
        self.buffer_chunks = int(env.get('DBTRANSIT_BUFFER_CHUNKS', self.buffer_chunks))
        self.log_level = env.get('DBTRANSIT_LOG_LEVEL', self.log_level).upper()
        self.temp_dir = env.get('DBTRANSIT_TEMP_DIR', self.temp_dir)

        if self.max_streams < 1:
            raise ValueError(f"max_streams must be >= 1, got {self.max_streams}")
        if self.buffer_chunks < 1:
            raise ValueError(f"buffer_chunks must be >= 1, got {self.buffer_chunks}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


@dataclass(frozen=True)
class Credentials:
    """Credentials consumed by drivers. Built once; drivers never read os.environ."""

    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_session_token: Optional[str] = None
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None
    pg_password: Optional[str] = None
    mysql_password: Optional[str] = None
    google_application_credentials: Optional[str] = None
    google_cloud_project: Optional[str] = None

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> 'Credentials':
        env = os.environ if environ is None else environ
        return cls(
            aws_access_key_id=env.get('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=env.get('AWS_SECRET_ACCESS_KEY'),
            aws_session_token=env.get('AWS_SESSION_TOKEN'),
            aws_region=env.get('AWS_DEFAULT_REGION') or env.get('AWS_REGION'),
            aws_profile=env.get('AWS_PROFILE'),
            pg_password=env.get('PGPASSWORD'),
            mysql_password=env.get('MYSQL_PWD'),
            google_application_credentials=env.get('GOOGLE_APPLICATION_CREDENTIALS'),
            google_cloud_project=env.get('GOOGLE_CLOUD_PROJECT'),
        )

    @property
    def has_aws_keys(self) -> bool:
        return bool(self.aws_access_key_id and self.aws_secret_access_key)

    def __repr__(self):
        # never print secret values
        present = [name for name, value in self.__dict__.items() if value]
        return f"Credentials(present={present})"


_SIZE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([KMGT]?i?B?)?\s*$', re.IGNORECASE)
_UNITS = {
    '': 1, 'B': 1,
    'KB': 1000, 'MB': 1000 ** 2, 'GB': 1000 ** 3, 'TB': 1000 ** 4,
    'KIB': 1024, 'MIB': 1024 ** 2, 'GIB': 1024 ** 3, 'TIB': 1024 ** 4,
    'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3, 'T': 1024 ** 4,
}


def parse_size(text: str) -> int:
    """'64MiB' -> 67108864, '1GB' -> 1000000000, '500' -> 500"""
    match = _SIZE.match(text)
    unit = (match.group(2) or '').upper() if match else None
    if not match or unit not in _UNITS:
        raise ValueError(f"Invalid size {text!r} (examples: 500KB, 64MiB, 1GB)")
    size = int(float(match.group(1)) * _UNITS[unit])
    if size < 1:
        raise ValueError(f"Size must be at least one byte: {text!r}")
    return size


def configure_logging(level: str = "INFO"):
    """Root logger setup for command-line use"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
