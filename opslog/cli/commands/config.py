"""Configuration commands for opslog.

Commands:
    opslog config show    - Display merged configuration with sources
"""

import json
import sys
from pathlib import Path
from typing import Any, Optional

import click

from opslog.cli.context import (
    Context,
    pass_context,
    EXIT_CONFIG_ERROR,
)
from opslog.cli.utils.config import (
    Config,
    ConfigError,
    SOURCE_DEFAULT,
    SOURCE_GLOBAL,
    SOURCE_PROJECT,
    SOURCE_ENV,
    PROJECT_CONFIG_DIR,
    CONFIG_FILENAME,
)
from opslog.cli.utils.config_schema import ConfigOption, get_categories, get_options_by_category
from opslog.cli.formatters import json_formatter, human_formatter


# Source display labels with color
SOURCE_LABELS = {
    SOURCE_DEFAULT: ("default", "white"),
    SOURCE_GLOBAL: ("global", "cyan"),
    SOURCE_PROJECT: ("project", "green"),
    SOURCE_ENV: ("env", "yellow"),
}

NOT_SET = "(not set)"
SECRET_MASK = "********"


@click.group()
def config() -> None:
    """Inspect opslog configuration."""
    pass


@config.command("show")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format (table, json)",
)
@pass_context
def show_config(ctx: Context, output_format: str) -> None:
    """Display merged configuration with value sources.

    Shows configuration values from all sources (defaults, global config,
    project config, environment variables) with clear indication of where
    each value comes from. Secrets are masked.

    \b
    Examples:
        opslog config show
        opslog config show --format json
    """
    try:
        cfg, sources = Config.from_files_and_env()
    except ConfigError as e:
        _handle_error(ctx, "ConfigError", str(e), EXIT_CONFIG_ERROR)
        return

    if output_format == "json" or ctx.json_output:
        _show_json(cfg, sources)
    else:
        _show_table(cfg, sources)


def _display_value(cfg: Config, option: ConfigOption) -> Optional[str]:
    """Display string for an option's value, or None when unset."""
    value: Any = getattr(cfg, option.field_name, None)
    if value is None or value == "":
        return None
    if option.secret:
        return SECRET_MASK
    return str(value)


def _show_table(cfg: Config, sources: dict[str, str]) -> None:
    """Display configuration in table format."""
    click.echo(click.style("Configuration Overview", bold=True))
    click.echo()

    click.echo("Config files:")
    _echo_config_file("Global: ", cfg.global_config_path, "~/.config/opslog/config.toml")
    _echo_config_file("Project:", cfg.project_config_path, f"./{PROJECT_CONFIG_DIR}/{CONFIG_FILENAME}")
    click.echo()

    rows = []
    for category in get_categories():
        for option in get_options_by_category(category):
            rows.append((category, option, _display_value(cfg, option) or NOT_SET))
    value_width = max([40] + [len(value) for _, _, value in rows])

    current_category = None
    for category, option, value in rows:
        if category != current_category:
            if current_category is not None:
                click.echo()
            click.echo(click.style(category, bold=True, fg="blue"))
            current_category = category

        source_label, source_color = SOURCE_LABELS.get(sources.get(option.field_name, SOURCE_DEFAULT), ("?", "white"))
        source_display = click.style(f"[{source_label}]", fg=source_color)
        click.echo(f"  {option.env_var.ljust(30)} {value.ljust(value_width)} {source_display}")
    click.echo()

    # Legend
    click.echo(click.style("Legend:", dim=True))
    legend_parts = [click.style(f"[{label}]", fg=color) for label, color in SOURCE_LABELS.values()]
    click.echo("  " + " ".join(legend_parts))


def _echo_config_file(label: str, path: Optional[Path], default_display: str) -> None:
    if path:
        click.echo(f"  {label} {path} " + click.style("(found)", fg="green"))
    else:
        click.echo(f"  {label} {default_display} " + click.style("(not found)", fg="white"))


def _show_json(cfg: Config, sources: dict[str, str]) -> None:
    """Display configuration as JSON."""
    values = {}
    for category in get_categories():
        for option in get_options_by_category(category):
            values[option.env_var] = {
                "value": _display_value(cfg, option),
                "source": sources.get(option.field_name, SOURCE_DEFAULT),
                "toml_key": option.toml_key,
                "category": category,
                "description": option.description,
            }

    result = {
        "config_files": {
            "global": str(cfg.global_config_path) if cfg.global_config_path else None,
            "project": str(cfg.project_config_path) if cfg.project_config_path else None,
        },
        "values": values,
    }
    click.echo(json.dumps(result, indent=2))


def _handle_error(ctx: Context, error_type: str, message: str, exit_code: int):
    """Handle and format errors consistently."""
    if ctx.json_output:
        click.echo(json_formatter.format_json_error(error_type, message, exit_code), err=True)
    else:
        click.echo(human_formatter.format_error(message), err=True)
    sys.exit(exit_code)
