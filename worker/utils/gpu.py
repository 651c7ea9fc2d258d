"""
Best-effort GPU detection through vendor CLI tools.
"""
from typing import Any, Dict

import structlog

from worker.utils.errors import ProcessError
from worker.utils.process import ProcessRunner

logger = structlog.get_logger()


class GPUDetector:
    """Detect NVIDIA GPUs via nvidia-smi. Never raises."""

    def __init__(self, runner: ProcessRunner, nvidia_smi_path: str = "nvidia-smi", timeout_ms: int = 10000):
        self.runner = runner
        self.nvidia_smi_path = nvidia_smi_path
        self.timeout_ms = timeout_ms

    async def detect(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "available": False,
            "name": None,
            "gpus": [],
        }

        try:
            output = await self.runner.execute(
                self.nvidia_smi_path,
                ["--query-gpu=name", "--format=csv,noheader"],
                timeout_ms=self.timeout_ms,
            )
        except ProcessError as e:
            logger.debug("NVIDIA GPU detection failed", error=str(e))
            return result

        names = [line.strip() for line in (output.stdout or "").splitlines() if line.strip()]
        if names:
            result["available"] = True
            result["name"] = names[0]
            result["gpus"] = [{"index": i, "name": name, "type": "nvidia"} for i, name in enumerate(names)]

        return result
