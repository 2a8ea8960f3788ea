"""
LocalCommandProvider: runs shell commands on the machine running the engine.

Serves the `command.Local` kind. Inputs:
    create       command run on create (required)
    update       command run on update (falls back to `create`)
    delete       command run on delete (optional)
    environment  extra environment variables
    dir          working directory

Outputs are the inputs plus `stdout` and `stderr` of the last command.
"""
from __future__ import annotations
from typing import Any, Dict, Optional, Tuple
import logging
import os
import subprocess
import uuid
from ..errors import NotFoundError, ProviderError
from .base import Diff

logger = logging.getLogger(__name__)

COMMAND_KIND = "command.Local"


class LocalCommandProvider:
    def __init__(self, shell: str = "/bin/sh", timeout: Optional[float] = None):
        self.shell = shell
        self.timeout = timeout

    def create(self, kind: str, inputs: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        command = inputs.get("create")
        if not command:
            raise ProviderError(f"{kind} requires a 'create' command", operation="create")
        stdout, stderr = self._run(command, inputs)
        provider_id = f"cmd-{uuid.uuid4().hex[:12]}"
        return provider_id, {**inputs, "id": provider_id, "stdout": stdout, "stderr": stderr}

    def update(self, provider_id: str, diff: Diff, prior: Any = None) -> Dict[str, Any]:
        inputs = dict(prior.inputs) if prior is not None else {}
        inputs.update({name: new for name, (_, new) in diff.items()})
        command = inputs.get("update") or inputs.get("create")
        if not command:
            raise ProviderError("no 'update' or 'create' command to run", operation="update")
        stdout, stderr = self._run(command, inputs)
        return {**inputs, "id": provider_id, "stdout": stdout, "stderr": stderr}

    def delete(self, provider_id: str, prior: Any = None) -> None:
        command = prior.inputs.get("delete") if prior is not None else None
        if not command:
            logger.debug(f"[command] {provider_id} has no delete command; nothing to run")
            return
        self._run(command, prior.inputs)

    def read(self, provider_id: str, prior: Any = None) -> Dict[str, Any]:
        # the effects of a local command cannot be observed; trust the last apply
        if prior is None:
            raise NotFoundError(f"no record of command {provider_id!r}")
        return dict(prior.outputs)

    def _run(self, command: str, inputs: Dict[str, Any]) -> Tuple[str, str]:
        env = dict(os.environ)
        env.update({str(k): str(v) for k, v in (inputs.get("environment") or {}).items()})
        logger.info(f"[command] running: {command.strip().splitlines()[0][:120]}")
        try:
            proc = subprocess.run(
                [self.shell, "-c", command],
                cwd=inputs.get("dir") or None,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ProviderError(f"command timed out after {e.timeout}s") from e
        except OSError as e:
            raise ProviderError(f"command could not be started: {e}") from e
        if proc.returncode != 0:
            raise ProviderError(
                f"command exited with status {proc.returncode}: {proc.stderr.strip()[:500]}"
            )
        return proc.stdout, proc.stderr
