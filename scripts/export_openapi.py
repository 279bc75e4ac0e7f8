"""Export the FastAPI-generated OpenAPI document to a static JSON file.

Usage:
    python scripts/export_openapi.py               # writes ./openapi.json
    python scripts/export_openapi.py docs/api.json
"""

import json
import sys
from pathlib import Path

from main import app

DEFAULT_PATH = Path(__file__).resolve().parent.parent / "openapi.json"


def main(argv: list[str]) -> None:
    target = Path(argv[0]) if argv else DEFAULT_PATH
    spec = app.openapi()
    target.write_text(json.dumps(spec, indent=2, sort_keys=True) + "\n")
    print(f"Wrote {len(spec['paths'])} paths to {target}")


if __name__ == "__main__":
    main(sys.argv[1:])
