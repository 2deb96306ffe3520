from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


LogFileMode = Literal["a", "w"]
LogFormat = Literal["text", "jsonl"]


class ServiceSettings(BaseModel):
    """Settings of a service started through the lifecycle manager.

    Empty paths mean "use the lifecycle default" (see daemonkit.paths).
    """

    v: int = 1
    detach: bool = False
    working_directory: str = ""
    pid_file: str = ""
    log_file: str = ""
    log_file_mode: Optional[LogFileMode] = None  # None: "w" in foreground, "a" when detached
    log_level: str = "INFO"
    log_format: LogFormat = "text"
    interval: float = Field(default=5.0, gt=0)

    model_config = ConfigDict(extra="forbid")
