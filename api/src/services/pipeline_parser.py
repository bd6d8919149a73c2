"""
Pipeline YAML parser and validator.
"""

import yaml
from typing import List, Dict, Any, Optional

POST_CONDITIONS = ("success", "failure", "unstable", "aborted", "always")
GATE_KEYS = ("branch", "environment", "not", "any_of")
# Omitted options fall back to the runner's settings
OPTION_KEYS = ("timeout", "max_history_runs", "allow_concurrent", "max_queued_runs")

class PipelineConfigError(Exception):
    """Raised when pipeline configuration is invalid."""
    pass

def parse_pipeline_config(yaml_content: str) -> Dict[str, Any]:
    """Parse pipeline YAML configuration from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}")

    return validate_config(config)

def parse_pipeline_dict(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate pipeline configuration from dict."""
    return validate_config(config)

def validate_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate pipeline configuration structure."""
    if not config:
        raise PipelineConfigError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise PipelineConfigError("Pipeline configuration must be a dictionary")

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise PipelineConfigError("Pipeline 'name' must be a string")

    image = config.get("image")
    if image is not None and not isinstance(image, str):
        raise PipelineConfigError("Pipeline 'image' must be a string")

    if "stages" not in config:
        raise PipelineConfigError("Pipeline must have 'stages' defined")

    stages = config["stages"]
    if not isinstance(stages, list):
        raise PipelineConfigError("Pipeline 'stages' must be a list")

    if len(stages) == 0:
        raise PipelineConfigError("Pipeline must have at least one stage")

    validated_stages = []
    seen = set()
    for i, stage in enumerate(stages):
        validated_stage = validate_stage(stage, i)
        if validated_stage["name"] in seen:
            raise PipelineConfigError(f"Duplicate stage name '{validated_stage['name']}'")
        seen.add(validated_stage["name"])
        validated_stages.append(validated_stage)

    return {
        "name": name,
        "image": image,
        "options": validate_options(config.get("options")),
        "environment": validate_environment(config.get("environment"), "Pipeline"),
        "stages": validated_stages,
        "post": validate_post(config.get("post"), "Pipeline"),
    }

def validate_options(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate run options (timeout, history, concurrency)."""
    if options is None:
        return {}

    if not isinstance(options, dict):
        raise PipelineConfigError("Pipeline 'options' must be a dictionary")

    unknown = set(options) - set(OPTION_KEYS)
    if unknown:
        raise PipelineConfigError(f"Unknown option(s): {', '.join(sorted(unknown))}")

    for key in ("timeout", "max_history_runs"):
        if key not in options:
            continue
        value = options[key]
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise PipelineConfigError(f"Option '{key}' must be a positive integer")

    if not isinstance(options.get("allow_concurrent", False), bool):
        raise PipelineConfigError("Option 'allow_concurrent' must be a boolean")

    max_queued = options.get("max_queued_runs")
    if max_queued is not None and (
        not isinstance(max_queued, int) or isinstance(max_queued, bool) or max_queued < 0
    ):
        raise PipelineConfigError("Option 'max_queued_runs' must be a non-negative integer")

    return dict(options)

def validate_environment(environment: Optional[Dict[str, Any]], where: str) -> Dict[str, str]:
    if environment is None:
        return {}

    if not isinstance(environment, dict):
        raise PipelineConfigError(f"{where} 'environment' must be a dictionary")

    for key, value in environment.items():
        if not isinstance(key, str):
            raise PipelineConfigError(f"{where} environment key {key!r} must be a string")
        if isinstance(value, (dict, list)) or value is None:
            raise PipelineConfigError(f"{where} environment '{key}' must be a scalar")

    return {key: str(value) for key, value in environment.items()}

def validate_step(step: Any, where: str) -> Dict[str, Any]:
    """Validate a step: a shell string or a {command: ...} mapping."""
    if isinstance(step, str):
        step = {"command": step}

    if not isinstance(step, dict):
        raise PipelineConfigError(f"{where} must be a string or dictionary")

    if "command" not in step or not isinstance(step["command"], str):
        raise PipelineConfigError(f"{where} missing 'command'")

    for flag in ("allow_failure", "unstable"):
        if not isinstance(step.get(flag, False), bool):
            raise PipelineConfigError(f"{where} '{flag}' must be a boolean")

    capture = step.get("capture")
    if capture is not None and not isinstance(capture, str):
        raise PipelineConfigError(f"{where} 'capture' must be an environment key")

    return {
        "command": step["command"],
        "allow_failure": step.get("allow_failure", False),
        "unstable": step.get("unstable", False),
        "capture": capture,
    }

def validate_post(post: Optional[Dict[str, Any]], where: str) -> Dict[str, List[Dict[str, Any]]]:
    """Validate a `post:` block keyed by outcome."""
    if post is None:
        return {}

    if not isinstance(post, dict):
        raise PipelineConfigError(f"{where} 'post' must be a dictionary")

    validated = {}
    for condition, steps in post.items():
        if condition not in POST_CONDITIONS:
            raise PipelineConfigError(
                f"{where} post condition '{condition}' must be one of {', '.join(POST_CONDITIONS)}"
            )
        if not isinstance(steps, list):
            raise PipelineConfigError(f"{where} post '{condition}' must be a list")
        validated[condition] = [
            validate_step(step, f"{where} post '{condition}' step {j}")
            for j, step in enumerate(steps)
        ]
    return validated

def validate_when(when: Any, where: str) -> Dict[str, Any]:
    """Validate a `when:` gate block."""
    if not isinstance(when, dict):
        raise PipelineConfigError(f"{where} 'when' must be a dictionary")

    for key, value in when.items():
        if key not in GATE_KEYS:
            raise PipelineConfigError(f"{where} unknown 'when' condition '{key}'")
        if key == "branch" and not isinstance(value, str):
            raise PipelineConfigError(f"{where} 'when.branch' must be a string")
        if key == "environment":
            validate_environment(value, f"{where} when")
        if key == "not":
            validate_when(value, where)
        if key == "any_of":
            if not isinstance(value, list) or not value:
                raise PipelineConfigError(f"{where} 'when.any_of' must be a non-empty list")
            for item in value:
                validate_when(item, where)

    return when

def validate_stage(stage: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Validate a single pipeline stage."""
    if not isinstance(stage, dict):
        raise PipelineConfigError(f"Stage {index} must be a dictionary")

    if "name" not in stage:
        raise PipelineConfigError(f"Stage {index} missing 'name'")

    if "steps" not in stage:
        raise PipelineConfigError(f"Stage {index} missing 'steps'")

    if not isinstance(stage["name"], str):
        raise PipelineConfigError(f"Stage {index} 'name' must be a string")

    if not isinstance(stage["steps"], list) or not stage["steps"]:
        raise PipelineConfigError(f"Stage {index} 'steps' must be a non-empty list")

    image = stage.get("image")
    if image is not None and not isinstance(image, str):
        raise PipelineConfigError(f"Stage {index} 'image' must be a string")

    artifacts = stage.get("artifacts", [])
    if not isinstance(artifacts, list) or not all(isinstance(a, str) for a in artifacts):
        raise PipelineConfigError(f"Stage {index} 'artifacts' must be a list of glob patterns")

    where = f"Stage {index}"
    return {
        "name": stage["name"],
        "image": image,
        "when": validate_when(stage["when"], where) if "when" in stage else {},
        "steps": [
            validate_step(step, f"Stage {index} step {j}")
            for j, step in enumerate(stage["steps"])
        ],
        "artifacts": artifacts,
        "post": validate_post(stage.get("post"), where),
    }
