"""
API 层
"""
