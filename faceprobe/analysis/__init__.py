"""Analysis modes combining detection, residuals and scoring."""

from faceprobe.analysis.orchestrator import AnalysisMode, AnalysisOrchestrator

__all__ = ["AnalysisMode", "AnalysisOrchestrator"]
