import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from quoting import ContractorRate, SavedProject

PROJECTS_KEY = "renovationProjects"
RATES_KEY = "contractorRates"
THEME_KEY = "theme"

THEMES = ("light", "dark")
DEFAULT_THEME = "dark"

STORE_FILENAME = "local_storage.json"

class LocalStore:
    """
    Single-user key/value store backed by one JSON file.
    Loaded once on construction; every set() rewrites the whole file.
    """

    def __init__(self, data_dir: str):
        self.path = Path(data_dir) / STORE_FILENAME
        self._data: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            print("DEBUG[LocalStore]: no store yet at", self.path)
            return
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
            if isinstance(parsed, dict):
                self._data = parsed
            print("DEBUG[LocalStore]: loaded keys:", sorted(self._data.keys()))
        except (OSError, ValueError) as e:
            print("DEBUG[LocalStore]: failed to load store, starting empty:", e)
            self._data = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._data, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)

    # ---------------- Projects ----------------
    def list_projects(self) -> List[SavedProject]:
        out: List[SavedProject] = []
        for raw in self.get(PROJECTS_KEY, []) or []:
            try:
                out.append(SavedProject.model_validate(raw))
            except ValueError as e:
                print("DEBUG[LocalStore.list_projects]: skipping bad record:", e)
        return out

    def get_project(self, project_id: str) -> Optional[SavedProject]:
        for p in self.list_projects():
            if p.id == project_id:
                return p
        return None

    def save_project(self, project: SavedProject) -> List[SavedProject]:
        others = [p for p in self.list_projects() if p.id != project.id]
        updated = sorted(others + [project], key=lambda p: p.name.casefold())
        self.set(PROJECTS_KEY, [p.model_dump() for p in updated])
        return updated

    # ---------------- Rate book ----------------
    def get_rates(self) -> Dict[str, ContractorRate]:
        raw = self.get(RATES_KEY, {}) or {}
        out: Dict[str, ContractorRate] = {}
        for k, v in raw.items():
            try:
                out[k] = ContractorRate.model_validate(v)
            except ValueError:
                continue
        return out

    def set_rates(self, rates: Dict[str, ContractorRate]) -> None:
        self.set(RATES_KEY, {k: v.model_dump() for k, v in rates.items()})

    # ---------------- Preferences ----------------
    def get_theme(self) -> str:
        theme = self.get(THEME_KEY) or DEFAULT_THEME
        return theme if theme in THEMES else DEFAULT_THEME

    def set_theme(self, theme: str) -> None:
        if theme not in THEMES:
            raise ValueError(f"Unknown theme: {theme}")
        self.set(THEME_KEY, theme)
