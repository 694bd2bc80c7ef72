from __future__ import annotations

import functools
import os
from dataclasses import dataclass

YAMNET_NUM_CLASSES = 521


def default_class_map_path() -> str:
    return os.path.join(os.path.abspath(os.path.dirname(__file__)), "resources", "yamnet_class_map.csv")


def load_class_names(class_map_csv_path: str) -> list[str]:
    """Read display names from a YAMNet class map CSV.

    Accepts both the upstream ``index,mid,display_name`` layout and the bundled
    ``index,display_name`` one. Rows are placed at their declared index; gaps stay empty.
    """
    names: dict[int, str] = {}
    with open(class_map_csv_path, "r", encoding="utf-8") as f:
        header = f.readline().strip().split(",")
        if not header or header[-1] != "display_name":
            raise ValueError(f"Invalid class map header in {class_map_csv_path}")
        # Split only the leading columns; display_name may be quoted and contain commas.
        leading = len(header) - 1
        for line in f:
            line = line.strip()
            if not line:
                continue
            parts = line.split(",", leading)
            if len(parts) != leading + 1:
                continue
            try:
                idx = int(parts[0])
            except ValueError:
                continue
            display = parts[-1].strip()
            if display.startswith('"') and display.endswith('"'):
                display = display[1:-1]
            names[idx] = display
    if not names:
        raise ValueError(f"Class map {class_map_csv_path} has no classes")
    size = max(names) + 1
    return [names.get(i, "") for i in range(size)]


@dataclass(frozen=True, slots=True)
class ClassificationIndex:
    """Read-only ``class index -> display name`` table shared by every connection."""

    labels: tuple[str, ...]

    @classmethod
    def from_csv(cls, path: str) -> ClassificationIndex:
        return cls(labels=tuple(load_class_names(path)))

    def resolve(self, index: int) -> str:
        # Unknown indices resolve to "" (unresolved), never an error.
        if 0 <= index < len(self.labels):
            return self.labels[index]
        return ""

    def __len__(self) -> int:
        return len(self.labels)


@functools.lru_cache(maxsize=None)
def default_index() -> ClassificationIndex:
    return ClassificationIndex.from_csv(default_class_map_path())
