"""
Managers for handling .env files and the variable context used to interpolate the catalog.
"""
import os
import shutil
from typing import Dict, List, Optional

import structlog
from dotenv import dotenv_values

logger = structlog.get_logger(__name__)


class EnvironmentManager:
    """
    Manages the .env file of a stack and the merged variable context.
    """
    def __init__(self, base_dir: str = "."):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        """
        self.base_dir = base_dir

    def _path(self, name: str) -> str:
        return name if os.path.isabs(name) else os.path.join(self.base_dir, name)

    def ensure_env_file(self, env_file: str = ".env", template: str = ".env.example") -> bool:
        """
        Creates the env file from its template when it does not exist yet.

        :return: True if the file was created.
        :raises FileNotFoundError: If neither the env file nor the template exists.
        """
        target = self._path(env_file)
        if os.path.exists(target):
            logger.debug("env_file_present", path=target)
            return False

        source = self._path(template)
        if not os.path.exists(source):
            raise FileNotFoundError(f"{template} not found, cannot create {env_file}")

        shutil.copyfile(source, target)
        logger.warning("env_file_created", path=target, template=source)
        return True

    def get_interpolation_context(self,
                                  env_files: List[str],
                                  environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Merges variables from the given .env files with the process environment.

        Later files override earlier ones; the process environment overrides
        every file, as docker compose does.

        :param env_files: Paths to .env files; missing files are skipped.
        :param environ: Process environment, defaults to ``os.environ``.
        :return: The merged variables.
        """
        merged: Dict[str, str] = {}
        for env_file in env_files:
            file_path = self._path(env_file)
            if os.path.exists(file_path):
                values = dotenv_values(file_path)
                merged.update({k: v for k, v in values.items() if v is not None})

        merged.update(os.environ if environ is None else environ)
        return merged
