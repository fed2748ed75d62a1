from flowmachine.core.models import StepType

STEP_TYPES = {t.value for t in StepType}


def validate_pipeline(definition: dict) -> list[str]:
    """Validate a pipeline definition. Returns a list of errors (empty = valid)."""
    errors = []

    if not definition.get("name"):
        errors.append("Pipeline must have a 'name' field")

    if "steps" not in definition:
        errors.append("Pipeline must have a 'steps' field")
        return errors

    steps = definition["steps"]
    if not isinstance(steps, list):
        errors.append("'steps' must be a list")
        return errors

    step_ids = set()
    for position, step in enumerate(steps):
        if not isinstance(step, dict) or not step.get("id"):
            errors.append(f"Step {position} must have an 'id' field")
            continue
        if step.get("type") not in STEP_TYPES:
            errors.append(
                f"Step '{step['id']}' has unknown type: '{step.get('type')}'"
            )
        if not isinstance(step.get("config", {}), dict):
            errors.append(f"Step '{step['id']}' config must be an object")
        if step["id"] in step_ids:
            errors.append(f"Duplicate step ID: '{step['id']}'")
        step_ids.add(step["id"])

    return errors


def validate_step_overrides(steps: list[dict], step_config: dict) -> list[str]:
    """Flow overrides may only target steps that exist in the pipeline."""
    known = {step["id"] for step in steps}
    errors = []
    for step_id, overrides in step_config.items():
        if step_id not in known:
            errors.append(f"Override for unknown step: '{step_id}'")
        elif not isinstance(overrides, dict):
            errors.append(f"Override for step '{step_id}' must be an object")
    return errors
