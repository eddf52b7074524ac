"""
Agile Mirror
Mirrors agile tracker data into a relational store and derives sprint and flow metrics.
"""

__version__ = '1.0.0'
