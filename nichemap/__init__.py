"""
Urban Vector Niche Mapping

Tools to map the urban distribution of a disease-vector mosquito: derive
predictors from multispectral scenes, prepare ovitrap occurrences, calibrate
and select Maxent models, validate thresholds against independent field
records and render output maps.
"""

from .accessible import AccessibleArea, define_accessible_area
from .calibration import CalibrationRun, CalibrationStage, FinalModel, calibrate_grid, fit_final_model
from .config import WorkflowConfig, load_config
from .engine import CandidateModel, MaxentEngine, MaxentJarEngine, parse_feature_classes
from .errors import EmptyInputError, EngineError, NicheMapError, SpatialReferenceError, StageInputError
from .evaluation import SelectionResult, evaluation_table, select_candidates
from .manifest import Manifest
from .predictors import PredictorStack, mask_to_area
from .rasters import GridSpec, Raster, read_raster, write_raster
from .render import binarize
from .validation import ConfusionMatrix, confusion_matrix, optimal_thresholds, validate
from .workspace import Workspace

__all__ = [
    'AccessibleArea',
    'define_accessible_area',
    'CalibrationRun',
    'CalibrationStage',
    'FinalModel',
    'calibrate_grid',
    'fit_final_model',
    'WorkflowConfig',
    'load_config',
    'CandidateModel',
    'MaxentEngine',
    'MaxentJarEngine',
    'parse_feature_classes',
    'EmptyInputError',
    'EngineError',
    'NicheMapError',
    'SpatialReferenceError',
    'StageInputError',
    'SelectionResult',
    'evaluation_table',
    'select_candidates',
    'Manifest',
    'PredictorStack',
    'mask_to_area',
    'GridSpec',
    'Raster',
    'read_raster',
    'write_raster',
    'binarize',
    'ConfusionMatrix',
    'confusion_matrix',
    'optimal_thresholds',
    'validate',
    'Workspace',
]
