import os
import logging
from typing import Optional, Tuple

import numpy as np
import SimpleITK as sitk

from .data_structures import TubeFields, GridSize

logger = logging.getLogger(__name__)

VECTOR_FIELD_FILE = 'vector_field.nrrd'
TDF_FILE = 'tdf.nrrd'
RADIUS_FILE = 'radius.nrrd'

# Full scale of vector components stored as signed 16-bit integers
INT16_SCALE = 32767.0


def decode_vector_field(array: np.ndarray) -> np.ndarray:
    """Convert stored vector components to float32

    Signed 16-bit components are scaled back to [-1, 1] as max(-1, v / 32767);
    floating point input is passed through.
    """
    array = np.asarray(array)
    if array.dtype == np.int16:
        return np.maximum(-1.0, array.astype(np.float32) / INT16_SCALE).astype(np.float32)
    return array.astype(np.float32)


def load_tube_fields(input_dir: str, vector_field_file: str = VECTOR_FIELD_FILE,
                     tdf_file: str = TDF_FILE,
                     radius_file: str = RADIUS_FILE) -> Tuple[TubeFields, sitk.Image]:
    """Load the vector field, TDF and radius volumes from a directory

    Args:
        input_dir: Directory holding the three NRRD files
        vector_field_file: Vector image with 3 (or more) components per voxel
        tdf_file: Scalar tube detection confidence image
        radius_file: Scalar radius image

    Returns:
        Tuple of (fields, reference image); the TDF image is returned as the
        reference for writing results with the same geometry
    """
    files = {
        'vector_field': os.path.join(input_dir, vector_field_file),
        'tdf': os.path.join(input_dir, tdf_file),
        'radius': os.path.join(input_dir, radius_file),
    }
    for name, path in files.items():
        if not os.path.exists(path):
            raise FileNotFoundError(f"Required input file not found: {path}")

    logger.info(f"Loading tube fields from {input_dir}")
    vector_field = decode_vector_field(sitk.GetArrayFromImage(sitk.ReadImage(files['vector_field'])))
    tdf_image = sitk.ReadImage(files['tdf'])
    tdf = sitk.GetArrayFromImage(tdf_image).astype(np.float32)
    radius = sitk.GetArrayFromImage(sitk.ReadImage(files['radius'])).astype(np.float32)

    fields = TubeFields.from_vector_field(vector_field, tdf, radius)
    logger.info(f"Loaded fields of size {tuple(fields.size)} (x, y, z)")
    return fields, tdf_image


def save_tube_fields(fields: TubeFields, output_dir: str) -> None:
    """Write fields in the layout load_tube_fields reads"""
    os.makedirs(output_dir, exist_ok=True)
    vectors = np.stack([fields.fx, fields.fy, fields.fz], axis=-1)
    sitk.WriteImage(sitk.GetImageFromArray(vectors, isVector=True),
                    os.path.join(output_dir, VECTOR_FIELD_FILE))
    sitk.WriteImage(sitk.GetImageFromArray(fields.tdf), os.path.join(output_dir, TDF_FILE))
    sitk.WriteImage(sitk.GetImageFromArray(fields.radius), os.path.join(output_dir, RADIUS_FILE))


def write_raw(volume: np.ndarray, path: str) -> None:
    """Write a volume without header as int8, x varying fastest"""
    np.ascontiguousarray(volume, dtype=np.int8).tofile(path)


def read_raw(path: str, size: GridSize, dtype=np.int8) -> np.ndarray:
    """Read a headerless volume written by write_raw into a [z, y, x] array"""
    data = np.fromfile(path, dtype=dtype)
    expected = size.x * size.y * size.z
    if data.size != expected:
        raise ValueError(f"{path} holds {data.size} values, expected {expected} for size {tuple(size)}")
    return data.reshape(size.shape)


def save_centerline_results(mask: np.ndarray, output_dir: str,
                            reference_image: Optional[sitk.Image] = None,
                            name: str = 'centerline') -> Tuple[str, str]:
    """Save a centerline volume as NRRD and as headerless raw

    Args:
        mask: Centerline volume indexed [z, y, x]
        output_dir: Destination directory
        reference_image: Image whose spacing, origin and direction are copied
        name: Base file name

    Returns:
        Tuple of (nrrd path, raw path)
    """
    os.makedirs(output_dir, exist_ok=True)
    nrrd_path = os.path.join(output_dir, f"{name}.nrrd")
    raw_path = os.path.join(output_dir, f"{name}.raw")

    image = sitk.GetImageFromArray(mask)
    if reference_image is not None:
        image.CopyInformation(reference_image)
    sitk.WriteImage(image, nrrd_path)
    write_raw(mask, raw_path)
    logger.info(f"Saved centerlines to {nrrd_path} and {raw_path}")
    return nrrd_path, raw_path
