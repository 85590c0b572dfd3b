"""
S3 Portal: an HTTP front end for AWS S3 and S3-compatible stores.

Browse buckets with lazily computed folder sizes, download folders as ZIP
archives and upload files with an exact Content-Length.
"""

__version__ = "0.1.0"
