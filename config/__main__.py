"""Command line interface for checking configuration loading"""
import sys
from pathlib import Path

from . import get_settings, SettingsError, DEFAULTS

EXAMPLE_HEADER = """[DEFAULT]
# Address holding the administrative capability (required)
admin_address = 0x0000000000000000000000000000000000000001
"""


def write_example(directory: Path) -> Path:
    """Write settings.conf.example with every default spelled out."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "settings.conf.example"
    lines = [EXAMPLE_HEADER]
    for key, value in DEFAULTS.items():
        lines.append(f"{key} = {value}")
    path.write_text("\n".join(lines) + "\n")
    return path


def main():
    """Display loaded configuration"""
    try:
        settings = get_settings(sys.argv[1] if len(sys.argv) > 1 else None)
    except SettingsError as e:
        print(str(e), file=sys.stderr)
    else:
        print("\nSettings Configuration:")
        print("-" * 50)
        for key, value in settings.items():
            print(f"{key}: {value}")

    path = write_example(Path("examples"))
    print(f"\nWrote {path}")


if __name__ == "__main__":
    main()
