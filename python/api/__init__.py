"""REST API package for the screening core"""
