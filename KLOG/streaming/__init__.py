"""
Log sessions, line classification, event channels and the render feed
"""
