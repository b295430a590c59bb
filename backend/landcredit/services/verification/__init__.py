"""NDVI verification."""
from .ndvi_analyzer import ImageryAnalysisService, VegetationChangeAnalyzer

__all__ = ["ImageryAnalysisService", "VegetationChangeAnalyzer"]
