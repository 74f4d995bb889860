"""
Forum Harvester – mirror a forum's threads and media.

Supports:
  • Discovering threads and their latest activity from the forum listing
  • Walking owned threads page by page with resumable checkpoints
  • Splitting work across independent workers by thread id
  • Relocating images and videos into MinIO/S3 under deterministic keys
  • Recycling the browser and watching host memory on long runs
"""

__version__ = "0.1.0"
