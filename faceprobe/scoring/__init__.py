from faceprobe.scoring.scorer import OnnxScorer, Scorer

__all__ = ["OnnxScorer", "Scorer"]
