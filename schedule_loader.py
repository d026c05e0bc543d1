"""
Schedule loader.

Loads and validates YAML files that declare cron schedules for recorded
workflows, e.g.:

    schedules:
      - id: nightly-invoices
        workflow_id: invoices
        cron: "0 2 * * *"
        timezone: America/New_York
        variables:
          month: "2025-01"
"""

from typing import Any, Dict, List
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from scheduler import next_run_time, validate_cron_expression
from workflow_models import Schedule


def schedule_from_dict(data: Dict[str, Any]) -> Schedule:
    """
    Create a Schedule from a dictionary (loaded from YAML).

    Raises:
        ValueError: If required fields are missing or invalid
    """
    if not isinstance(data, dict):
        raise ValueError("Each schedule must be a dictionary")
    if 'workflow_id' not in data:
        raise ValueError("Schedule must have 'workflow_id' field")

    cron = data.get('cron', data.get('cron_expression'))
    if cron is None:
        raise ValueError("Schedule must have 'cron' field")
    validation = validate_cron_expression(cron)
    if not validation.is_valid:
        raise ValueError(f"Invalid cron for workflow {data['workflow_id']}: {validation.error}")

    tz = data.get('timezone', 'UTC')
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise ValueError(f"Unknown timezone: {tz}")

    for key in ('variables', 'run_config', 'metadata'):
        if key in data and not isinstance(data[key], dict):
            raise ValueError(f"'{key}' must be a dictionary")

    fields: Dict[str, Any] = {
        'workflow_id': str(data['workflow_id']),
        'cron_expression': cron,
        'timezone': tz,
        'is_active': bool(data.get('active', data.get('is_active', True))),
        'variables': data.get('variables') or {},
        'run_config': data.get('run_config') or {},
        'metadata': data.get('metadata') or {},
    }
    if data.get('id'):
        fields['id'] = str(data['id'])
    return Schedule(**fields)


def load_schedules(file_path: str) -> List[Schedule]:
    """
    Load schedules from a YAML file.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If any schedule is invalid
        yaml.YAMLError: If YAML parsing fails
    """
    path = Path(file_path)

    if not path.exists():
        raise FileNotFoundError(f"Schedule file not found: {file_path}")

    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict) or not isinstance(data.get('schedules'), list):
        raise ValueError("Schedule file must contain a 'schedules' list")

    schedules = []
    for index, item in enumerate(data['schedules']):
        try:
            schedules.append(schedule_from_dict(item))
        except ValueError as e:
            raise ValueError(f"Schedule #{index + 1}: {e}")
    return schedules


def validate_schedules(schedules: List[Schedule]) -> List[str]:
    """
    Validate loaded schedules and return a list of warnings (not errors).
    """
    warnings = []

    seen = set()
    for schedule in schedules:
        if schedule.id in seen:
            warnings.append(f"Duplicate schedule id: {schedule.id}")
        seen.add(schedule.id)

        if not schedule.is_active:
            warnings.append(f"Schedule {schedule.id} is inactive and will not fire")

        if schedule.cron_expression.split()[0] == '*':
            warnings.append(f"Schedule {schedule.id} fires every minute: {schedule.cron_expression}")

        if next_run_time(schedule.cron_expression, schedule.timezone) is None:
            warnings.append(f"Schedule {schedule.id} never fires: {schedule.cron_expression}")

    if not schedules:
        warnings.append("No schedules defined")

    return warnings
