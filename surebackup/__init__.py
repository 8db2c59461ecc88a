"""
SureBackup for AHV: recovery verification in an isolated network.
"""

__version__ = "1.0.0"
