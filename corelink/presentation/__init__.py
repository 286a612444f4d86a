"""
Presentation layer: the HTTP surface of helper cores.
"""
