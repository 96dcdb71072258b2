"""
Configuration parser for the stack topology.

This module provides functionality to parse and validate stack-topology.yaml
files against the JSON schema, load CloudFormation parameter files, and build
the StackSpec objects the reconciler consumes.
"""

import json
import yaml
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from pathlib import Path
from jsonschema import validate

from stack_reconciler import StackSpec


DEFAULT_SCHEMA_PATH = str(Path(__file__).parent / "stack-topology.schema.json")


class ConfigError(Exception):
    """Exception raised when a template or parameter file cannot be loaded."""
    pass


@dataclass
class StackConfig:
    """Configuration for a CloudFormation stack."""
    name: str
    template: str
    parameters: Optional[str] = None
    parameters_fallback: Optional[str] = None
    capabilities: List[str] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class StageConfig:
    """Configuration for a deployment stage."""
    name: str
    stacks: List[StackConfig]
    parallel: bool = False


@dataclass
class TopologyConfig:
    """Complete stack topology configuration."""
    version: str
    project: str
    environment: str
    region: str
    stages: List[StageConfig]
    tags: Dict[str, str] = field(default_factory=dict)
    base_dir: Path = field(default_factory=Path)

    @property
    def base_name(self) -> str:
        return f"{self.project}-{self.environment}"

    def stack_name(self, stack: StackConfig) -> str:
        """Full CloudFormation stack name for a configured stack."""
        return f"{self.base_name}-{stack.name}"

    def stack_names(self) -> List[str]:
        """All stack names in dependency order."""
        return [self.stack_name(stack) for stage in self.stages for stack in stage.stacks]

    def stage(self, selector: str) -> StageConfig:
        """
        Look up a stage by name or 1-based position.

        Raises:
            KeyError: If no stage matches
        """
        if selector.isdigit():
            index = int(selector)
            if 1 <= index <= len(self.stages):
                return self.stages[index - 1]
        for stage in self.stages:
            if stage.name == selector:
                return stage
        raise KeyError(f"Unknown stage: {selector}")


class ConfigParser:
    """Parser for stack topology configuration files."""

    def __init__(self, schema_path: str = DEFAULT_SCHEMA_PATH):
        """
        Initialize the configuration parser.

        Args:
            schema_path: Path to the JSON schema file
        """
        self.schema_path = schema_path
        self.schema = self._load_schema()

    def _load_schema(self) -> dict:
        """Load the JSON schema from file."""
        schema_file = Path(self.schema_path)
        if not schema_file.exists():
            raise FileNotFoundError(f"Schema file not found: {self.schema_path}")

        with open(schema_file, 'r') as f:
            return json.load(f)

    def parse(
        self,
        config_path: str,
        environment: Optional[str] = None,
        region: Optional[str] = None,
        project: Optional[str] = None
    ) -> TopologyConfig:
        """
        Parse and validate a configuration file.

        Args:
            config_path: Path to the stack-topology.yaml file
            environment: Optional override for the configured environment
            region: Optional override for the configured region
            project: Optional override for the configured project

        Returns:
            Parsed and validated TopologyConfig object

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValidationError: If config doesn't match schema
            yaml.YAMLError: If YAML is malformed
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        # Load YAML
        with open(config_file, 'r') as f:
            config_data = yaml.safe_load(f)

        # Apply overrides before validation so they are checked too
        if isinstance(config_data, dict):
            if environment:
                config_data['environment'] = environment
            if region:
                config_data['region'] = region
            if project:
                config_data['project'] = project

        # Validate against schema
        validate(instance=config_data, schema=self.schema)

        # Parse into structured objects
        return self._parse_config(config_data, config_file.resolve().parent)

    def _parse_config(self, config_data: dict, base_dir: Path) -> TopologyConfig:
        """Convert raw config data into TopologyConfig object."""
        stages = []
        for stage_data in config_data['stages']:
            stacks = [
                StackConfig(
                    name=stack['name'],
                    template=stack['template'],
                    parameters=stack.get('parameters'),
                    parameters_fallback=stack.get('parameters_fallback'),
                    capabilities=list(stack.get('capabilities', [])),
                    tags=dict(stack.get('tags', {}))
                )
                for stack in stage_data['stacks']
            ]
            stages.append(StageConfig(
                name=stage_data['name'],
                stacks=stacks,
                parallel=stage_data.get('parallel', False)
            ))

        return TopologyConfig(
            version=config_data['version'],
            project=config_data['project'],
            environment=config_data['environment'],
            region=config_data['region'],
            stages=stages,
            tags=dict(config_data.get('tags', {})),
            base_dir=base_dir
        )


def parse_config(
    config_path: str,
    schema_path: str = DEFAULT_SCHEMA_PATH,
    environment: Optional[str] = None,
    region: Optional[str] = None,
    project: Optional[str] = None
) -> TopologyConfig:
    """
    Convenience function to parse a configuration file.

    Args:
        config_path: Path to the stack-topology.yaml file
        schema_path: Path to the JSON schema file
        environment: Optional environment override
        region: Optional region override
        project: Optional project override

    Returns:
        Parsed and validated TopologyConfig object
    """
    parser = ConfigParser(schema_path=schema_path)
    return parser.parse(config_path, environment=environment, region=region, project=project)


def load_parameters_file(path: str) -> Dict[str, str]:
    """
    Load a CloudFormation parameters file.

    Both the CLI list form ([{"ParameterKey": ..., "ParameterValue": ...}])
    and a flat {"Key": "Value"} mapping are accepted.

    Args:
        path: Path to the JSON parameters file

    Returns:
        Ordered mapping of parameter key to value

    Raises:
        ConfigError: If the file is missing or malformed
    """
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Parameters file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in parameters file {path}: {str(e)}") from e

    if isinstance(data, dict):
        return {str(key): str(value) for key, value in data.items()}

    if isinstance(data, list):
        parameters = {}
        for entry in data:
            if not isinstance(entry, dict) or 'ParameterKey' not in entry:
                raise ConfigError(f"Invalid parameter entry in {path}: {entry!r}")
            parameters[entry['ParameterKey']] = str(entry.get('ParameterValue', ''))
        return parameters

    raise ConfigError(f"Parameters file {path} must contain a list or an object")


def resolve_parameters_path(
    stack: StackConfig,
    environment: str,
    base_dir: Path
) -> Optional[Path]:
    """
    Pick the parameter file for a stack.

    The environment-specific file is used when it exists, otherwise the
    fallback file. Returns None if the stack declares no parameters.

    Raises:
        ConfigError: If a parameter file is declared but none exists
    """
    if not stack.parameters:
        return None

    primary = base_dir / stack.parameters.format(environment=environment)
    if primary.exists():
        return primary

    if stack.parameters_fallback:
        fallback = base_dir / stack.parameters_fallback.format(environment=environment)
        if fallback.exists():
            print(f"Warning: {primary} not found, using {fallback}")
            return fallback

    raise ConfigError(f"Parameters file not found: {primary}")


def read_template(path: Path) -> str:
    """Read a template body from disk."""
    try:
        return path.read_text()
    except FileNotFoundError as e:
        raise ConfigError(f"Template not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read template {path}: {str(e)}") from e


def build_stack_spec(topology: TopologyConfig, stack: StackConfig) -> StackSpec:
    """
    Build the StackSpec for a configured stack.

    Args:
        topology: Parsed topology (supplies naming, base directory and shared tags)
        stack: Stack configuration

    Returns:
        StackSpec ready for reconciliation

    Raises:
        ConfigError: If the template or parameter file cannot be loaded
    """
    template_body = read_template(topology.base_dir / stack.template)

    parameters: Dict[str, str] = {}
    parameters_path = resolve_parameters_path(stack, topology.environment, topology.base_dir)
    if parameters_path is not None:
        parameters = load_parameters_file(str(parameters_path))

    tags = dict(topology.tags)
    tags.update(stack.tags)

    return StackSpec(
        name=topology.stack_name(stack),
        template_body=template_body,
        parameters=parameters,
        capabilities=tuple(stack.capabilities),
        tags=tags
    )
