"""
Core retrieval package
"""
