import os
import logging
from typing import Dict, Optional, Union

from .data_structures import CenterlineMethod, TubeFields
from .field_io import load_tube_fields, save_centerline_results
from .graph_centerline import GraphCenterlineExtractor, GraphCenterlineParameters
from .ridge_traversal import RidgeTraversalExtractor, RidgeTraversalParameters

logger = logging.getLogger(__name__)

# Each method maps to its extractor and parameter class
EXTRACTORS = {
    CenterlineMethod.RIDGE: (RidgeTraversalExtractor, RidgeTraversalParameters),
    CenterlineMethod.GRAPH: (GraphCenterlineExtractor, GraphCenterlineParameters),
}


def get_method(method: Union[str, CenterlineMethod]) -> CenterlineMethod:
    if isinstance(method, CenterlineMethod):
        return method
    return CenterlineMethod.from_name(method)


def create_extractor(method: Union[str, CenterlineMethod] = CenterlineMethod.RIDGE,
                     parameters=None):
    """Build the extractor for a method

    Args:
        method: CenterlineMethod or its name
        parameters: Parameter dataclass instance, or a dict of overrides
            applied to the method's defaults

    Returns:
        Extractor with an extract(fields) method
    """
    extractor_class, parameters_class = EXTRACTORS[get_method(method)]
    if parameters is None:
        parameters = parameters_class()
    elif isinstance(parameters, dict):
        parameters = parameters_class.from_dict(parameters)
    return extractor_class(parameters)


def extract_centerlines(fields: TubeFields,
                        method: Union[str, CenterlineMethod] = CenterlineMethod.RIDGE,
                        parameters=None):
    """Extract centerlines from tube fields with the selected method

    Returns:
        RidgeTraversalResult or GraphCenterlineResult; both expose the
        centerline volume as .mask
    """
    method = get_method(method)
    logger.info(f"Extracting centerlines with the {method.name.lower()} method")
    return create_extractor(method, parameters).extract(fields)


def run_centerline_extraction(input_dir: str, output_dir: Optional[str] = None,
                              method: Union[str, CenterlineMethod] = CenterlineMethod.RIDGE,
                              custom_params: Optional[Dict] = None):
    """Load fields from disk, extract centerlines and save the result

    Args:
        input_dir: Directory with vector_field.nrrd, tdf.nrrd and radius.nrrd
        output_dir: Directory to save results (default: input_dir/centerlines)
        method: CenterlineMethod or its name
        custom_params: Parameter overrides for the selected method

    Returns:
        The extraction result
    """
    logger.info("Starting centerline extraction...")

    if output_dir is None:
        output_dir = os.path.join(input_dir, "centerlines")
    os.makedirs(output_dir, exist_ok=True)

    # Set up logging to file
    log_file = os.path.join(output_dir, "centerline_extraction.log")
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    logging.getLogger().addHandler(file_handler)

    try:
        logger.info("Step 1: Loading tube fields...")
        fields, reference_image = load_tube_fields(input_dir)

        logger.info("Step 2: Extracting centerlines...")
        result = extract_centerlines(fields, method, custom_params or {})

        logger.info("Step 3: Saving results...")
        save_centerline_results(result.mask, output_dir, reference_image)

        logger.info("Centerline extraction completed successfully.")
        return result

    except Exception as e:
        logger.error(f"Error during centerline extraction: {str(e)}")
        raise
    finally:
        logging.getLogger().removeHandler(file_handler)
        file_handler.close()
