"""
Deploy Monitor
==============

Pipeline monitoring and alerting engine for deployment pipelines.
"""

__version__ = "0.1.0"
