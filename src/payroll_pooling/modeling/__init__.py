"""Model specification layer: priors, typed builder, design arrays and the model ladder."""

from .design import DesignMatrices, GroupDesign, build_design
from .ladder import LadderPriors, build_ladder, get_model, list_available_models
from .priors import LKJ, Exponential, HalfCauchy, HalfNormal, Normal, StudentT
from .spec import INTERCEPT, FixedTerm, GroupStructure, ModelSpec, ModelSpecBuilder, VaryingIntercept, VaryingSlope

__all__ = [
    "DesignMatrices",
    "Exponential",
    "FixedTerm",
    "GroupDesign",
    "GroupStructure",
    "HalfCauchy",
    "HalfNormal",
    "INTERCEPT",
    "LKJ",
    "LadderPriors",
    "ModelSpec",
    "ModelSpecBuilder",
    "Normal",
    "StudentT",
    "VaryingIntercept",
    "VaryingSlope",
    "build_design",
    "build_ladder",
    "get_model",
    "list_available_models",
]
