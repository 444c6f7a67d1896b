"""
Configuration Management for stepforge.

WHAT THIS FILE DOES:
-------------------
Loads and validates configuration from YAML files with sensible defaults.
Covers subprocess timeouts, the orchestration abort policy, workflow
retention and the default project context handed to new workflows.

CONFIG FILE LOCATION:
--------------------
Default: ~/.stepforge/config.yaml (then ./stepforge.yaml, ./stepforge.yml)

CONFIG FORMAT:
-------------
```yaml
execution:
  command_timeout: 30
  install_timeout: 60
  test_timeout: 120
  package_manager: "npm"

orchestration:
  critical_steps: ["file_creation", "math_calculation"]
  max_errors: 3

workflow:
  retention_hours: 24
  critical_tools: ["create_directory", "create_file", "run_terminal"]
  default_context:
    projectType: "nodejs"
    projectName: "workflow-project"
    targetDir: "/tmp/workflow-project"

logging:
  level: "INFO"
```
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_BLOCKED_PATTERNS = [
    r"rm\s+-rf\s+/(\s|$)",  # rm -rf /
    r"rm\s+-rf\s+~",        # rm -rf ~
    r"mkfs\.",              # Format filesystems
    r"dd\s+if=",            # Direct disk access
    r":\(\)\s*\{\s*:\|:&\s*\};:",  # Fork bomb
]


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class ExecutionConfig:
    """Timeouts and safety settings for the tool execution engine."""
    command_timeout: float = 30.0
    install_timeout: float = 60.0
    test_timeout: float = 120.0
    package_manager: str = "npm"
    blocked_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_PATTERNS))


@dataclass
class OrchestrationConfig:
    """Abort policy for single-pass orchestration."""
    critical_steps: list[str] = field(default_factory=lambda: ["file_creation", "math_calculation"])
    max_errors: int = 3


@dataclass
class WorkflowConfig:
    """Settings for multi-phase workflows."""
    retention_hours: float = 24.0
    critical_tools: list[str] = field(default_factory=lambda: ["create_directory", "create_file", "run_terminal"])
    default_context: dict[str, Any] = field(default_factory=lambda: {
        "projectType": "nodejs",
        "projectName": "workflow-project",
        "targetDir": "/tmp/workflow-project",
    })

    @property
    def retention_seconds(self) -> float:
        return self.retention_hours * 60 * 60


@dataclass
class LoggingConfig:
    """Logging settings for the CLI and MCP entry points."""
    level: str = "INFO"


@dataclass
class Config:
    """
    Complete configuration for stepforge.

    It can be loaded from a YAML file or created with defaults.
    """
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# =============================================================================
# DEFAULT CONFIGURATION
# =============================================================================

def get_default_config() -> Config:
    """Get the default configuration."""
    return Config()


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

def _parse_config(data: dict) -> Config:
    """Parse a complete configuration from dict."""
    config = get_default_config()

    if "execution" in data:
        execution_data = data["execution"] or {}
        defaults = config.execution
        config.execution = ExecutionConfig(
            command_timeout=float(execution_data.get("command_timeout", defaults.command_timeout)),
            install_timeout=float(execution_data.get("install_timeout", defaults.install_timeout)),
            test_timeout=float(execution_data.get("test_timeout", defaults.test_timeout)),
            package_manager=execution_data.get("package_manager", defaults.package_manager),
            blocked_patterns=list(execution_data.get("blocked_patterns", defaults.blocked_patterns)),
        )

    if "orchestration" in data:
        orchestration_data = data["orchestration"] or {}
        defaults = config.orchestration
        config.orchestration = OrchestrationConfig(
            critical_steps=list(orchestration_data.get("critical_steps", defaults.critical_steps)),
            max_errors=int(orchestration_data.get("max_errors", defaults.max_errors)),
        )

    if "workflow" in data:
        workflow_data = data["workflow"] or {}
        defaults = config.workflow
        default_context = dict(defaults.default_context)
        default_context.update(workflow_data.get("default_context") or {})
        config.workflow = WorkflowConfig(
            retention_hours=float(workflow_data.get("retention_hours", defaults.retention_hours)),
            critical_tools=list(workflow_data.get("critical_tools", defaults.critical_tools)),
            default_context=default_context,
        )

    if "logging" in data:
        logging_data = data["logging"] or {}
        config.logging = LoggingConfig(
            level=str(logging_data.get("level", "INFO")).upper(),
        )

    return config


def _default_paths() -> list[Path]:
    return [
        Path.home() / ".stepforge" / "config.yaml",
        Path("./stepforge.yaml"),
        Path("./stepforge.yml"),
    ]


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries the default locations
              and falls back to defaults.

    Raises:
        FileNotFoundError: If an explicit path does not exist
    """
    if path:
        path = Path(path).expanduser()
        if path.exists():
            return load_config_from_file(path)
        raise FileNotFoundError(f"Config file not found: {path}")

    for default_path in _default_paths():
        if default_path.exists():
            return load_config_from_file(default_path)

    return get_default_config()


def load_config_from_file(path: Path) -> Config:
    """
    Load configuration from a specific file.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return _parse_config(data)


def save_config(config: Config, path: Path) -> None:
    """Save configuration to a YAML file."""
    data = {
        "execution": {
            "command_timeout": config.execution.command_timeout,
            "install_timeout": config.execution.install_timeout,
            "test_timeout": config.execution.test_timeout,
            "package_manager": config.execution.package_manager,
            "blocked_patterns": list(config.execution.blocked_patterns),
        },
        "orchestration": {
            "critical_steps": list(config.orchestration.critical_steps),
            "max_errors": config.orchestration.max_errors,
        },
        "workflow": {
            "retention_hours": config.workflow.retention_hours,
            "critical_tools": list(config.workflow.critical_tools),
            "default_context": dict(config.workflow.default_context),
        },
        "logging": {
            "level": config.logging.level,
        },
    }

    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
