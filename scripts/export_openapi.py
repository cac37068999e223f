"""Write the API schema to openapi.json (or the path given as the first argument)."""
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

# Importing the app initialises the database; keep it away from the real one
os.environ.setdefault("DATABASE_URL", f"sqlite:///{(ROOT / '.tmp' / 'openapi.db').as_posix()}")

from app.main import app


def main() -> int:
    target = Path(sys.argv[1]) if len(sys.argv) > 1 else ROOT / "openapi.json"
    target.write_text(json.dumps(app.openapi(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    print("wrote", target)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
