"""Exporters and importers for MBOX, EML and JSON files."""

from .eml import EmlExporter, EmlImporter
from .json import JsonExporter
from .mbox import MboxExporter, MboxImporter


__all__ = [
    'EmlExporter',
    'EmlImporter',
    'JsonExporter',
    'MboxExporter',
    'MboxImporter',
]
