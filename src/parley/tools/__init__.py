"""
Local Tools - Functions the models can call without a remote server
"""
