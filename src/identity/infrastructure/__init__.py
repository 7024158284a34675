"""Identity Infrastructure"""
