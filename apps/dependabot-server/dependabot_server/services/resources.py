from __future__ import annotations

import math
from dataclasses import dataclass

from dependabot_server.config import settings

# config-file ecosystem name -> updater package manager; others pass through
PACKAGE_MANAGERS: dict[str, str] = {
    "dotnet-sdk": "dotnet_sdk",
    "github-actions": "github_actions",
    "gitsubmodule": "submodules",
    "gomod": "go_modules",
    "mix": "hex",
    "npm": "npm_and_yarn",
    "yarn": "npm_and_yarn",
    "pnpm": "npm_and_yarn",
    "pipenv": "pip",
    "pip-compile": "pip",
    "poetry": "pip",
}

# ecosystems that need more room than the baseline
RESOURCE_MULTIPLIERS: dict[str, float] = {
    "npm": 2,
    "yarn": 2,
    "pnpm": 2,
}


def package_manager_for(ecosystem: str) -> str:
    return PACKAGE_MANAGERS.get(ecosystem, ecosystem)


def _round_memory(value: float) -> float:
    # memory is allocated in 0.1 GB steps
    return math.ceil(round(value * 10, 6)) / 10


@dataclass(frozen=True)
class UpdateJobResources:
    cpu: float
    memory: float  # GB

    @classmethod
    def from_ecosystem(
        cls,
        ecosystem: str,
        base_cpu: float | None = None,
        base_memory: float | None = None,
    ) -> UpdateJobResources:
        cpu = settings.job_cpu if base_cpu is None else base_cpu
        memory = settings.job_memory if base_memory is None else base_memory
        factor = RESOURCE_MULTIPLIERS.get(ecosystem, 1)
        return cls(cpu=cpu * factor, memory=_round_memory(memory * factor))

    @property
    def nano_cpus(self) -> int:
        return int(self.cpu * 1_000_000_000)

    @property
    def mem_limit(self) -> str:
        return f"{int(round(self.memory * 1024))}m"
