from faceprobe.extract.walker import DirectoryWalker, FaceExtractor, write_report

__all__ = ["DirectoryWalker", "FaceExtractor", "write_report"]
