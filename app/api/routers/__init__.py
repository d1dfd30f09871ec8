"""
HTTP routers for import jobs, import templates and field mapping.
"""
