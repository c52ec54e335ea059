"""Settings for the build scheduler and the coordinate mapper.

Settings come from three places, later ones winning: the defaults below,
an optional ``_pagesync.yml`` next to the main source file, and
``PAGESYNC_*`` environment variables.
"""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

CONFIG_NAME = "_pagesync.yml"
ENV_PREFIX = "PAGESYNC_"


def _default_commands():
    # Placeholders are filled by the compile stage and the renderer.
    return {
        "slow": [
            "latexmk",
            "-dvi",
            "-f",
            "-interaction=nonstopmode",
            "-latex=pdflatex --output-format=dvi -synctex=1 %O %S",
            "{main}",
        ],
        "fast": [
            "pdflatex",
            "--output-format=dvi",
            "-synctex=1",
            "-interaction=nonstopmode",
            "-fmt={fmt}",
            "{main}",
        ],
        "format": [
            "pdflatex",
            "-ini",
            "-interaction=nonstopmode",
            "-jobname={fmt}",
            "&pdflatex",
            "mylatexformat.ltx",
            "{main}",
        ],
        "render": [
            "dvisvgm",
            "--page={pages}",
            "--font-format=woff2",
            "--bbox=papersize",
            "--linkmark=none",
            "--output={output}",
            "{dvi}",
        ],
        "html": [],
    }


@dataclass
class BuildSettings:
    debounce_ms: int = 200
    synctex_debounce_ms: int = 30000
    cancel_grace_ms: int = 500
    compile_timeout: float = 120.0
    render_timeout: float = 600.0
    extraction_timeout: float = 600.0


@dataclass
class LayoutSettings:
    # intrinsic page size of the fixed-page regime, in points
    pdf_width: float = 612.0
    pdf_height: float = 792.0
    # canvas geometry
    target_width: float = 800.0
    page_gap: float = 20.0
    tab_spacing: float = 24.0
    nearby_margin: float = 15.0

    @property
    def scale(self):
        return self.target_width / self.pdf_width

    @property
    def page_height(self):
        return self.pdf_height * self.scale


@dataclass
class Settings:
    build: BuildSettings = field(default_factory=BuildSettings)
    layout: LayoutSettings = field(default_factory=LayoutSettings)
    commands: dict = field(default_factory=_default_commands)


def _coerce(value, current):
    if isinstance(current, bool):
        return str(value).lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def _apply_section(target, values, section_name):
    known = {f.name for f in dataclasses.fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ValueError(
                f"Unknown setting '{key}' in section '{section_name}'"
            )
        setattr(target, key, _coerce(value, getattr(target, key)))


def load_settings(source_dir=None, environ=None):
    """Return :class:`Settings` for the document rooted at ``source_dir``."""
    settings = Settings()
    if source_dir is not None:
        config_path = Path(source_dir) / CONFIG_NAME
        if config_path.exists():
            cfg = yaml.safe_load(config_path.read_text()) or {}
            if "build" in cfg:
                _apply_section(settings.build, cfg["build"], "build")
            if "layout" in cfg:
                _apply_section(settings.layout, cfg["layout"], "layout")
            if "commands" in cfg:
                for name, argv in cfg["commands"].items():
                    if not isinstance(argv, list):
                        raise ValueError(
                            f"Command '{name}' in {config_path} must be a"
                            " list of arguments"
                        )
                    settings.commands[name] = [str(j) for j in argv]
    if environ is None:
        environ = os.environ
    for section in (settings.build, settings.layout):
        for f in dataclasses.fields(section):
            env_name = ENV_PREFIX + f.name.upper()
            if env_name in environ:
                setattr(
                    section,
                    f.name,
                    _coerce(environ[env_name], getattr(section, f.name)),
                )
    return settings
