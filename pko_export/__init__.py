"""Convert loaded PKO engine models to Wavefront OBJ/MTL and glTF 2.0."""

from .classify import ModelCategory, classify_model
from .combined import CombinedExportResult, export_combined_character
from .errors import ExportError, LayoutError
from .gltf_export import GltfExportOptions, GltfExportResult, export_gltf, export_model_gltf
from .gltf_layout import UVStrategy
from .model import Bone, ExportGroup, Geometry, Material, ModelObject, Skeleton, Subset, TextureRef
from .obj_writer import ObjExportOptions, ObjExportResult, export_obj

__all__ = [
    "Bone",
    "CombinedExportResult",
    "ExportError",
    "ExportGroup",
    "Geometry",
    "GltfExportOptions",
    "GltfExportResult",
    "LayoutError",
    "Material",
    "ModelCategory",
    "ModelObject",
    "ObjExportOptions",
    "ObjExportResult",
    "Skeleton",
    "Subset",
    "TextureRef",
    "UVStrategy",
    "classify_model",
    "export_combined_character",
    "export_gltf",
    "export_model_gltf",
    "export_obj",
]

__version__ = "0.1.0"
