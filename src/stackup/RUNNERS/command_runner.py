# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Execution of external tool commands (docker, kubectl, minikube) with captured output.
"""
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

from ..exceptions import ExecutorError

logger = structlog.get_logger(__name__)


@dataclass
class CommandResult:
    """Captured result of one command."""

    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error_text(self) -> str:
        text = (self.stderr or self.stdout).strip()
        return text[:500] if text else f"Exit code: {self.returncode}"


class CommandRunner:
    """
    Runs short-lived commands for an executor.
    """
    def __init__(self,
                 name: str,
                 env: Optional[Dict[str, str]] = None,
                 working_dir: Optional[str] = None):
        """
        Initializes the command runner.

        Args:
            name (str): Identifier used in log events.
            env (Optional[Dict[str, str]]): Environment for the commands, inherited when None.
            working_dir (Optional[str]): Directory to run the commands in.
        """
        self.name = name
        self.env = env
        self.working_dir = working_dir

    @staticmethod
    def available(tool: str) -> bool:
        """
        Checks whether a tool is on PATH.
        """
        return shutil.which(tool) is not None

    def run(self,
            argv: List[str],
            timeout: Optional[float] = None,
            check: bool = False) -> CommandResult:
        """
        Runs a command and captures its output.

        Args:
            argv (List[str]): Command and arguments to execute.
            timeout (Optional[float]): Seconds before the command is killed.
            check (bool): Raise when the command exits non-zero.

        Returns:
            CommandResult: The captured result.

        Raises:
            ExecutorError: If the tool is missing, times out, or fails with check set.
        """
        logger.debug("command_run", runner=self.name, argv=argv)
        try:
            completed = subprocess.run(
                argv,
                env=self.env,
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                timeout=timeout,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except FileNotFoundError as e:
            raise ExecutorError(f"{argv[0]} is not installed or not in PATH", command=argv) from e
        except subprocess.TimeoutExpired as e:
            raise ExecutorError(f"Command timed out after {timeout}s: {' '.join(argv)}", command=argv) from e

        result = CommandResult(
            argv=list(argv),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if check and not result.ok:
            raise ExecutorError(
                f"Command failed: {' '.join(argv)}: {result.error_text}",
                command=argv,
                returncode=result.returncode,
            )
        return result
