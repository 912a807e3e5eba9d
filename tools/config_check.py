"""Configuration validation tooling for the insight layer.

Usage:
    python -m tools.config_check                         # validate config/app.yaml
    python -m tools.config_check --files config/app.yaml staging.yaml
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Iterable, List, Optional

import yaml
from pydantic import ValidationError

from ai.model_client import DEFAULT_API_KEY_ENV
from ai.settings import DEFAULT_CONFIG_PATH, AppSettings, format_validation_error, load_yaml


def validate_file(path: Path) -> List[str]:
    try:
        data = load_yaml(path)
        settings = AppSettings.model_validate(data)
    except FileNotFoundError:
        return [f"✖ {path}: file not found"]
    except ValidationError as exc:
        return [f"✖ {path} invalid"] + format_validation_error(exc)
    except (TypeError, yaml.YAMLError) as exc:
        return [f"✖ {path}: {exc}"]

    messages = [f"✓ {path} valid"]
    messages.extend(_warnings(settings))
    return messages


def _warnings(settings: AppSettings) -> List[str]:
    """Non-fatal findings: missing API keys for configured providers."""
    notes = []
    providers = {settings.ai.provider, *settings.ai.forced_providers.values()}
    for provider in sorted(providers - {"mock"}):
        env_name = (
            settings.ai.api_key_env
            if provider == settings.ai.provider and settings.ai.api_key_env
            else DEFAULT_API_KEY_ENV[provider]
        )
        if not os.getenv(env_name):
            notes.append(f"  ! {provider}: environment variable {env_name} is not set")
    return notes


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate insight configuration files")
    parser.add_argument("--files", nargs="*", help="Specific config files to validate")
    args = parser.parse_args(list(argv) if argv is not None else None)

    targets = args.files if args.files else [str(DEFAULT_CONFIG_PATH)]

    exit_code = 0
    for target in targets:
        messages = validate_file(Path(target))
        for line in messages:
            print(line)
        if messages[0].startswith("✖"):
            exit_code = 1

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
