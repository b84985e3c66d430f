"""Serialized write queue for registry mutations."""

from tessera.queue.write_queue import SerializedWriteQueue

__all__ = ["SerializedWriteQueue"]
