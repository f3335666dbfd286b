"""
Regulation Engine Services
"""
