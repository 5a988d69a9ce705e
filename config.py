"""
Figma Sentinel configuration.

This module defines the SentinelConfig value object:
- Include/exclude property lists for normalization
- Spec store, changelog and PR body locations
- Image export settings

A SentinelConfig is resolved once per run and passed by value into every
pipeline call. There is no module-level cache.
"""

import json
from pathlib import Path
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, Tuple, Union

from .errors import ValidationError

CONFIG_FILE_NAME = ".figma-sentinelrc.json"

# camelCase keys accepted in the JSON config file
_FIELD_NAMES = {
    "specsDir": "specs_dir",
    "includeProperties": "include_properties",
    "excludeProperties": "exclude_properties",
    "exportImages": "export_images",
    "imageScale": "image_scale",
    "changelogFile": "changelog_file",
    "prBodyFile": "pr_body_file",
}


@dataclass(frozen=True)
class SentinelConfig:
    """Configuration for one Figma Sentinel run."""

    # Spec store root; relative paths resolve against the working directory
    specs_dir: Path = field(default_factory=lambda: Path(".design-specs"))

    # When set, normalization keeps only these keys plus the preserved visual set
    include_properties: Optional[Tuple[str, ...]] = None
    exclude_properties: Tuple[str, ...] = ()

    export_images: bool = True
    image_scale: float = 2

    changelog_file: str = "DESIGN_CHANGELOG.md"
    pr_body_file: str = "PR_BODY.md"

    def __post_init__(self):
        # Normalize list inputs so the config stays hashable and immutable
        object.__setattr__(self, "specs_dir", Path(self.specs_dir))
        if self.include_properties is not None:
            object.__setattr__(self, "include_properties", tuple(self.include_properties))
        object.__setattr__(self, "exclude_properties", tuple(self.exclude_properties or ()))

    @property
    def changelog_path(self) -> Path:
        return self.specs_dir / self.changelog_file

    @property
    def pr_body_path(self) -> Path:
        return self.specs_dir / self.pr_body_file

    @property
    def images_dir(self) -> Path:
        return self.specs_dir / "images"

    def ensure_directories(self) -> None:
        """Ensure the spec store and image directories exist."""
        self.specs_dir.mkdir(parents=True, exist_ok=True)
        if self.export_images:
            self.images_dir.mkdir(parents=True, exist_ok=True)

    def validate(self) -> "SentinelConfig":
        """
        Check the configuration for contradictions.

        Returns:
            self, so calls can be chained.

        Raises:
            ValidationError: If a property is both included and excluded, or
                the image scale is out of range.
        """
        if self.include_properties is not None:
            conflicts = sorted(set(self.include_properties) & set(self.exclude_properties))
            if conflicts:
                raise ValidationError(
                    f"Properties both included and excluded: {', '.join(conflicts)}"
                )
        if not 0.1 <= self.image_scale <= 4:
            raise ValidationError(f"imageScale must be between 0.1 and 4, got {self.image_scale}")
        return self

    def with_specs_dir(self, specs_dir: Union[str, Path]) -> "SentinelConfig":
        """Return a copy rooted at a different spec store directory."""
        return replace(self, specs_dir=Path(specs_dir))

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "SentinelConfig":
        """
        Build a config from the JSON config file layout.

        Args:
            data: Mapping with camelCase keys (specsDir, includeProperties, ...).
            base_dir: Directory relative specsDir values resolve against.

        Raises:
            ValidationError: On unknown keys or wrongly typed values.
        """
        if not isinstance(data, dict):
            raise ValidationError("Configuration must be a JSON object")

        unknown = sorted(set(data) - set(_FIELD_NAMES))
        if unknown:
            raise ValidationError(f"Unknown configuration field(s): {', '.join(unknown)}")

        values = {_FIELD_NAMES[key]: value for key, value in data.items()}

        for name in ("include_properties", "exclude_properties"):
            value = values.get(name)
            if value is not None and not (
                isinstance(value, list) and all(isinstance(v, str) for v in value)
            ):
                raise ValidationError(f"{name} must be a list of strings")

        if "specs_dir" in values:
            if not isinstance(values["specs_dir"], str) or not values["specs_dir"]:
                raise ValidationError("specsDir must be a non-empty string")
            specs_dir = Path(values["specs_dir"])
            if base_dir is not None and not specs_dir.is_absolute():
                specs_dir = base_dir / specs_dir
            values["specs_dir"] = specs_dir

        if "export_images" in values and not isinstance(values["export_images"], bool):
            raise ValidationError("exportImages must be a boolean")
        if "image_scale" in values and (
            isinstance(values["image_scale"], bool)
            or not isinstance(values["image_scale"], (int, float))
        ):
            raise ValidationError("imageScale must be a number")

        return cls(**values).validate()


def load_config(path: Union[str, Path]) -> SentinelConfig:
    """
    Load and validate a config file.

    Args:
        path: Path to a JSON config file, or a directory containing
            .figma-sentinelrc.json. A directory without one yields defaults
            rooted in that directory.

    Returns:
        The validated SentinelConfig.
    """
    path = Path(path)
    if path.is_dir():
        candidate = path / CONFIG_FILE_NAME
        if not candidate.exists():
            return SentinelConfig(specs_dir=path / ".design-specs")
        path = candidate

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ValidationError(f"Config file not found: {path}")
    except ValueError as e:
        raise ValidationError(f"Invalid JSON in {path}: {e}", cause=e)

    return SentinelConfig.from_dict(data, base_dir=path.parent)


# Defaults used when the caller passes no configuration
DEFAULT_CONFIG = SentinelConfig()
