"""
Log filtering: grep-style pattern pipelines and sandboxed shell filters
"""
