"""Read-only access to the view catalog of a reconstruction scene."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class View:
    """A single image of the scene.

    Attributes:
        view_id: View index, unique within the scene.
        image_path: Image path, relative to the scene root.
        width: Image width in pixels.
        height: Image height in pixels.
    """

    view_id: int
    image_path: str
    width: int
    height: int

    @property
    def stem(self) -> str:
        """Image file name without directory and extension."""
        return Path(self.image_path).stem


@dataclass(frozen=True)
class SceneCatalog:
    """View metadata of a scene.

    Attributes:
        root_path: Directory the view image paths are relative to.
        views: Views keyed by view id.
    """

    root_path: Path
    views: dict[int, View]

    @property
    def view_ids(self) -> list[int]:
        """View ids in ascending order."""
        return sorted(self.views)

    def __len__(self) -> int:
        return len(self.views)

    def __contains__(self, view_id: object) -> bool:
        return view_id in self.views

    def read_view(self, view_id: int) -> View:
        """Return the view with the given id.

        Raises:
            KeyError: If the id is not part of the scene.
        """
        try:
            return self.views[view_id]
        except KeyError:
            raise KeyError(f"View {view_id} is not part of the scene") from None

    def image_paths(self) -> dict[int, Path]:
        """Absolute image path of every view, keyed by view id."""
        return {
            view_id: self.root_path / view.image_path
            for view_id, view in sorted(self.views.items())
        }

    def image_sizes(self) -> dict[int, tuple[int, int]]:
        """Image size as (width, height) of every view, keyed by view id."""
        return {
            view_id: (view.width, view.height)
            for view_id, view in sorted(self.views.items())
        }


def _parse_view(entry: object, index: int) -> View:
    if not isinstance(entry, dict):
        raise ValueError(f"views[{index}] must be an object, got {type(entry).__name__}")

    missing = [key for key in ("id", "path", "width", "height") if key not in entry]
    if missing:
        raise ValueError(f"views[{index}] is missing keys: {missing}")

    view_id = entry["id"]
    width = entry["width"]
    height = entry["height"]
    for name, value in (("id", view_id), ("width", width), ("height", height)):
        # bool is an int subclass; reject it explicitly
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"views[{index}].{name} must be an integer, got {value!r}")

    if view_id < 0:
        raise ValueError(f"views[{index}].id must be non-negative, got {view_id}")
    if width <= 0 or height <= 0:
        raise ValueError(
            f"views[{index}] has invalid image size {width}x{height}"
        )
    if not isinstance(entry["path"], str) or not entry["path"]:
        raise ValueError(f"views[{index}].path must be a non-empty string")

    return View(view_id=view_id, image_path=entry["path"], width=width, height=height)


def load_scene(scene_path: str | Path) -> SceneCatalog:
    """Load the view catalog of a scene.

    The scene file is JSON with the layout::

        {
            "root_path": "images",
            "views": [{"id": 0, "path": "a.jpg", "width": 640, "height": 480}, ...]
        }

    A relative root_path is resolved against the scene file's directory. View
    ids are view indices: a scene of n views uses exactly the ids 0 .. n - 1.

    Args:
        scene_path: Path to the scene JSON file.

    Returns:
        SceneCatalog with every view of the file.

    Raises:
        FileNotFoundError: If the scene file does not exist.
        ValueError: If the file is not valid JSON or the catalog is malformed
            (missing keys, negative or duplicate ids, ids that are not
            0 .. n - 1, invalid sizes).
    """
    scene_path = Path(scene_path)
    if not scene_path.is_file():
        raise FileNotFoundError(f"Scene file does not exist: {scene_path}")

    try:
        with open(scene_path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in scene file {scene_path}: {e}") from e

    if not isinstance(data, dict) or "views" not in data:
        raise ValueError(f"Scene file {scene_path} is missing the 'views' key")
    if not isinstance(data["views"], list):
        raise ValueError(f"'views' in {scene_path} must be a list")

    root_path = Path(data.get("root_path", ""))
    if not root_path.is_absolute():
        root_path = scene_path.parent / root_path

    views: dict[int, View] = {}
    for index, entry in enumerate(data["views"]):
        view = _parse_view(entry, index)
        if view.view_id in views:
            raise ValueError(f"Duplicate view id {view.view_id} in {scene_path}")
        views[view.view_id] = view

    if sorted(views) != list(range(len(views))):
        missing = sorted(set(range(len(views))) - set(views))
        raise ValueError(
            f"View ids in {scene_path} must be 0 .. {len(views) - 1}; missing ids: {missing}"
        )

    logger.info("Loaded %d views from %s", len(views), scene_path)
    return SceneCatalog(root_path=root_path, views=views)
