"""
Road Recorder Storage
Buffered, ordered persistence of processed samples to session files
"""

from .csv_storage import CsvFileStorage, StorageProvider
from .writer import BufferedSampleWriter

__all__ = [
    'CsvFileStorage',
    'StorageProvider',
    'BufferedSampleWriter',
]

__version__ = '1.0.0'
