"""
Exam Document Converter
=======================
Local pipeline that reformats photos, signatures and supporting documents
to the submission rules of competitive examination authorities.

Architecture:
    - Classifier: Assigns each input file to a document slot
    - Formatter: Resizes / re-encodes / compresses to the slot constraint
    - State Machine: Tracks every file through its lifecycle
    - Coordinator: Runs the stages concurrently and aggregates progress
    - Packager: Bundles completed files into a ZIP archive

Nothing leaves the machine: all decoding and encoding happens in-process.

Version: 1.0.0
"""

__version__ = "1.0.0"
