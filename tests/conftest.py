import json
from pathlib import Path

import pytest


def _feature(num: int, **overrides) -> dict:
    data = {
        "id": f"feature-{num}-item",
        "category": "core",
        "title": f"Feature {num}",
        "description": f"Feature number {num}",
        "priority": 2,
        "status": "completed",
        "passes": True,
    }
    data.update(overrides)
    return data


@pytest.fixture
def metadata_dir(tmp_path) -> Path:
    path = tmp_path / ".automaker"
    path.mkdir()
    return path


@pytest.fixture
def write_feature(metadata_dir):
    def _write(num: int, raw: str = None, **overrides) -> Path:
        data = _feature(num, **overrides)
        target = metadata_dir / "features" / data.get("id", f"feature-{num}") / "feature.json"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(raw if raw is not None else json.dumps(data, indent=2))
        return target

    return _write
