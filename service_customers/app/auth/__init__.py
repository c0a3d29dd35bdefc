"""
Admin authorization.

A request is admitted with the shared service secret as bearer token or
with a session whose email is on the administrator allow-list.
"""
