"""Repository configuration, discovery and logging setup."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .addressing import ALGORITHMS, DEFAULT_ALGORITHM
from .errors import StorageError
from .models import validate_ref_name
from .refs import DEFAULT_BRANCH

logger = logging.getLogger(__name__)

REPO_DIR_NAME = ".histograph"
CONFIG_FILE = "config.json"
LOG_FILE = "histograph.log"

ENV_PATH = "HISTOGRAPH_PATH"
ENV_AUTHOR = "HISTOGRAPH_AUTHOR"
ENV_LOG_LEVEL = "HISTOGRAPH_LOG_LEVEL"

Backend = Literal["sqlite", "file", "memory"]


class RepositoryConfig(BaseModel):
    """Settings fixed when a repository is created, stored as config.json.

    ``hash_algorithm`` cannot change after init: every digest in the store
    depends on it.
    """

    backend: Backend = "sqlite"
    hash_algorithm: str = DEFAULT_ALGORITHM
    strict: bool = False
    verify_reads: bool = False
    default_branch: str = DEFAULT_BRANCH
    author: str = ""
    require_parents: bool = False
    max_workers: int | None = Field(default=None, ge=1)

    @field_validator("hash_algorithm")
    @classmethod
    def _known_algorithm(cls, value: str) -> str:
        if value not in ALGORITHMS:
            raise ValueError(f"Unknown hash algorithm '{value}'. Choose from: {', '.join(ALGORITHMS)}")
        return value

    @field_validator("default_branch")
    @classmethod
    def _valid_branch(cls, value: str) -> str:
        valid, message = validate_ref_name(value)
        if not valid:
            raise ValueError(message)
        return value

    @classmethod
    def load(cls, repo_dir: Path) -> RepositoryConfig:
        """Read config.json, falling back to defaults when it is absent."""
        path = Path(repo_dir) / CONFIG_FILE
        if not path.exists():
            return cls()
        try:
            return cls.model_validate_json(path.read_text())
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    def save(self, repo_dir: Path) -> None:
        path = Path(repo_dir) / CONFIG_FILE
        try:
            path.write_text(self.model_dump_json(indent=2))
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e

    def effective_author(self) -> str:
        """Author for new commits: HISTOGRAPH_AUTHOR wins over the stored one."""
        return os.environ.get(ENV_AUTHOR) or self.author


def find_repo_dir(start: Path | None = None) -> Path:
    """Find the repository from HISTOGRAPH_PATH or walk up to find .histograph."""
    if env_path := os.environ.get(ENV_PATH):
        return Path(env_path)

    cwd = Path(start) if start is not None else Path.cwd()
    for parent in [cwd] + list(cwd.parents):
        repo_dir = parent / REPO_DIR_NAME
        if repo_dir.is_dir():
            return repo_dir

    return cwd / REPO_DIR_NAME


def configure_logging(repo_dir: Path | None = None, level: str | None = None) -> None:
    """Log to stderr and, when the repository exists, to histograph.log in it.

    Level comes from the argument, then HISTOGRAPH_LOG_LEVEL, then WARNING.
    """
    level_name = (level or os.environ.get(ENV_LOG_LEVEL) or "WARNING").upper()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if repo_dir is not None and Path(repo_dir).is_dir():
        handlers.append(logging.FileHandler(Path(repo_dir) / LOG_FILE))

    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
