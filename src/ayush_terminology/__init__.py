"""AYUSH Terminology Engine.

NAMASTE, ICD-11 TM2 and ICD-11 Biomedical mapping, search and FHIR
terminology operations.
"""

__version__ = "1.0.0"
