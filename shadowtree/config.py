"""Configuration management for shadowtree."""

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

CONFIG_FILENAME = ".shadowtree.yaml"


class Config(BaseModel):
    """shadowtree configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    project: str = "shadowtree"
    runtime: str = "docker"
    container_prefix: str = "claude-code-sandbox"
    workspace_path: str = "/workspace"
    container_user: str = "claude"
    session_command: List[str] = Field(
        default_factory=lambda: ["/home/claude/start-session.sh"]
    )
    session_env: Dict[str, str] = Field(
        default_factory=lambda: {"TERM": "xterm-256color", "COLORTERM": "truecolor"}
    )
    shadow_root: Path = Path("/tmp/claude-shadows")
    history_limit: int = 100_000
    debounce_ms: int = 500
    sync_timeout_s: float = 300
    command_timeout_s: int = 120
    resize_delay_ms: int = 100
    server_host: str = "127.0.0.1"
    server_port: int = 3456
    open_browser: bool = True
    shadow_branch: str = "claude-changes"
    extra_excludes: List[str] = Field(default_factory=list)

    def get_session_id(self, container_id: str) -> str:
        """Get the shadow session id for a container (truncated container id).

        Args:
            container_id: Full container id

        Returns:
            First 12 characters of the id, like the runtime's short ids
        """
        return container_id[:12]

    def get_shadow_path(self, container_id: str) -> Path:
        """Get the shadow working tree path for a container."""
        return self.shadow_root / self.get_session_id(container_id)

    def get_exclude_file(self, container_id: str) -> Path:
        """Get the exclude-pattern file that sits alongside a shadow tree."""
        return self.shadow_root / f"{self.get_session_id(container_id)}-excludes.txt"

    @property
    def debounce_s(self) -> float:
        return self.debounce_ms / 1000


def find_config_file(start_path: Path) -> Optional[Path]:
    """Find .shadowtree.yaml file by walking up directory tree.

    Args:
        start_path: Directory to start searching from

    Returns:
        Path to config file, or None if not found
    """
    current = start_path.resolve()

    while True:
        config_file = current / CONFIG_FILENAME
        if config_file.exists():
            return config_file

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from .shadowtree.yaml file.

    Args:
        path: Path to directory containing config file (default: current directory)

    Returns:
        Loaded configuration (or default if file not found)
    """
    if path is None:
        path = Path.cwd()

    config_file = find_config_file(path)

    if config_file is None:
        return Config()

    with open(config_file, "r") as f:
        data = yaml.safe_load(f)

    if data is None:
        return Config()

    return Config(**data)
