from faceprobe.batch.writer import BatchWriter, read_back, resolve_destination

__all__ = ["BatchWriter", "read_back", "resolve_destination"]
