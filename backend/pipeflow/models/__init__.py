from .records import Record, StorageMeta

__all__ = [
    'Record', 'StorageMeta',
]
