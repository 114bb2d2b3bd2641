from __future__ import annotations

from pathlib import Path
from typing import Dict, Union


def load_class_names(path: Union[str, Path]) -> Dict[int, str]:
    """
    Load a {class_id: label} mapping.

    Two formats are accepted:

    - a label file with one label per line (line index = class id), or ';'-separated
      labels on a single line:

        person
        bicycle
        car

    - a `metadata.yaml` style `names:` mapping (other keys before it are skipped):

        names:
          0: person
          1: bicycle

    Blank lines and '#' comments are ignored.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Label file not found: {path}")

    lines = []
    with open(path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            lines.append(line)

    if "names:" in lines:
        names: Dict[int, str] = {}
        in_names = False
        for line in lines:
            if line == "names:":
                in_names = True
                continue
            if not in_names:
                continue

            # Parse "id: label"
            if ":" not in line:
                continue
            left, right = line.split(":", 1)
            left = left.strip()
            if not left.isdigit():
                continue
            names[int(left)] = right.strip().strip("'").strip('"')
        return names

    if len(lines) == 1 and ";" in lines[0]:
        lines = [label.strip() for label in lines[0].split(";") if label.strip()]

    return {i: label for i, label in enumerate(lines)}
