"""Per-view regions (keypoints + descriptors) and the descriptor-type declaration."""

import json
import logging
import pickle
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import numpy as np
import torch
from pydantic import BaseModel, ValidationError

from ..config import IMAGE_DESCRIBER_FILENAME, format_validation_errors

logger = logging.getLogger(__name__)

DescriptorKind = Literal["numeric", "binary"]


class RegionsType(BaseModel):
    """Descriptor-type declaration shared by every view of a run.

    Attributes:
        describer: Name of the upstream describer (e.g. "SIFT", "AKAZE_MLDB").
        descriptor_kind: "numeric" for float vectors compared with L2,
            "binary" for packed bit strings compared with Hamming distance.
        descriptor_length: Expected descriptor width (floats for numeric,
            bytes for binary), or None to accept any width.
    """

    describer: str
    descriptor_kind: DescriptorKind
    descriptor_length: int | None = None

    @property
    def is_numeric(self) -> bool:
        return self.descriptor_kind == "numeric"

    @property
    def is_binary(self) -> bool:
        return self.descriptor_kind == "binary"


def load_regions_type(path: str | Path) -> RegionsType:
    """Load the descriptor-type declaration.

    Args:
        path: Path to the declaration JSON file, or to the directory holding
            ``image_describer.json``.

    Returns:
        Validated RegionsType.

    Raises:
        FileNotFoundError: If the declaration does not exist.
        ValueError: If the declaration is not valid JSON or fails validation.
    """
    path = Path(path)
    if path.is_dir():
        path = path / IMAGE_DESCRIBER_FILENAME
    if not path.is_file():
        raise FileNotFoundError(f"Descriptor-type declaration not found: {path}")

    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in descriptor-type declaration {path}: {e}") from e

    try:
        regions_type = RegionsType.model_validate(data)
    except ValidationError as e:
        raise ValueError(
            f"Invalid descriptor-type declaration {path}:\n{format_validation_errors(e)}"
        ) from None

    logger.info(
        "Regions type: %s (%s descriptors)",
        regions_type.describer,
        regions_type.descriptor_kind,
    )
    return regions_type


def save_regions_type(regions_type: RegionsType, path: str | Path) -> None:
    """Write a descriptor-type declaration as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(regions_type.model_dump(mode="json"), f, indent=2)


@dataclass(frozen=True)
class Regions:
    """Keypoints and descriptors of one view.

    Arrays are read-only once constructed, so a Regions object can be shared
    between matching threads without copying.

    Attributes:
        keypoints: Feature locations (u, v), shape (N, 2), float32.
        descriptors: Descriptors, shape (N, D). float32 for numeric kinds,
            uint8 packed bits for binary kinds.
        kind: Descriptor kind.
    """

    keypoints: np.ndarray
    descriptors: np.ndarray
    kind: DescriptorKind

    def __post_init__(self) -> None:
        self.keypoints.setflags(write=False)
        self.descriptors.setflags(write=False)

    def __len__(self) -> int:
        return self.descriptors.shape[0]

    @property
    def descriptor_length(self) -> int:
        return self.descriptors.shape[1]


def _as_numpy(value: object) -> np.ndarray:
    if isinstance(value, torch.Tensor):
        return value.detach().cpu().numpy()
    return np.asarray(value)


def make_regions(
    keypoints: np.ndarray | torch.Tensor,
    descriptors: np.ndarray | torch.Tensor,
    regions_type: RegionsType,
) -> Regions:
    """Validate raw arrays against the declaration and build a Regions object.

    Args:
        keypoints: Feature locations, shape (N, 2).
        descriptors: Descriptors, shape (N, D).
        regions_type: Descriptor-type declaration of the run.

    Returns:
        Regions holding private read-only copies of the arrays.

    Raises:
        ValueError: If shapes are inconsistent or the descriptor dtype or width
            does not match the declaration.
    """
    kpts = np.array(_as_numpy(keypoints), dtype=np.float32)
    desc = _as_numpy(descriptors)

    if desc.ndim == 1 and desc.size == 0:
        desc = desc.reshape(0, regions_type.descriptor_length or 0)
    if kpts.ndim == 1 and kpts.size == 0:
        kpts = kpts.reshape(0, 2)

    if kpts.ndim != 2 or kpts.shape[1] != 2:
        raise ValueError(f"keypoints must have shape (N, 2), got {kpts.shape}")
    if desc.ndim != 2:
        raise ValueError(f"descriptors must have shape (N, D), got {desc.shape}")
    if desc.shape[0] != kpts.shape[0]:
        raise ValueError(
            f"{kpts.shape[0]} keypoints but {desc.shape[0]} descriptors"
        )

    if regions_type.is_binary:
        if desc.dtype != np.uint8:
            raise ValueError(
                f"binary descriptors must be packed uint8, got {desc.dtype}"
            )
        desc = np.array(desc, dtype=np.uint8)
    else:
        if not (np.issubdtype(desc.dtype, np.floating) or np.issubdtype(desc.dtype, np.integer)):
            raise ValueError(f"numeric descriptors must be numbers, got {desc.dtype}")
        desc = np.array(desc, dtype=np.float32)

    expected = regions_type.descriptor_length
    if expected is not None and desc.shape[0] > 0 and desc.shape[1] != expected:
        raise ValueError(
            f"descriptor length {desc.shape[1]} does not match declared length {expected}"
        )

    return Regions(keypoints=kpts, descriptors=desc, kind=regions_type.descriptor_kind)


def regions_path(regions_dir: str | Path, image_stem: str) -> Path:
    """Path of the region file of a view."""
    return Path(regions_dir) / f"{image_stem}.pt"


def save_regions(
    keypoints: np.ndarray | torch.Tensor,
    descriptors: np.ndarray | torch.Tensor,
    path: str | Path,
) -> None:
    """Save keypoints and descriptors of one view to a .pt file.

    Args:
        keypoints: Feature locations, shape (N, 2).
        descriptors: Descriptors, shape (N, D).
        path: Output file path (should end with .pt).
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    torch.save(
        {
            "keypoints": torch.as_tensor(np.asarray(_as_numpy(keypoints))),
            "descriptors": torch.as_tensor(np.asarray(_as_numpy(descriptors))),
        },
        path,
    )


def load_regions(path: str | Path, regions_type: RegionsType) -> Regions:
    """Load the regions of one view from a .pt file.

    Args:
        path: Path to the region file.
        regions_type: Descriptor-type declaration of the run.

    Returns:
        Validated, read-only Regions.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is corrupt or does not match the declaration.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Region file not found: {path}")

    try:
        data = torch.load(path, weights_only=True)
    except (RuntimeError, EOFError, ValueError, pickle.UnpicklingError) as e:
        raise ValueError(f"Corrupt region file {path}: {e}") from e

    if not isinstance(data, dict) or not {"keypoints", "descriptors"} <= set(data):
        raise ValueError(
            f"Region file {path} must hold 'keypoints' and 'descriptors'"
        )

    try:
        return make_regions(data["keypoints"], data["descriptors"], regions_type)
    except ValueError as e:
        raise ValueError(f"Invalid region file {path}: {e}") from e
