from .data_structures import CenterlineMethod, FieldShapeError, GridSize, TubeFields
from .graph_centerline import GraphCenterlineExtractor, GraphCenterlineParameters
from .pipeline import extract_centerlines, run_centerline_extraction
from .ridge_traversal import RidgeTraversalExtractor, RidgeTraversalParameters
