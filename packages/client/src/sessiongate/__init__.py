"""sessiongate — client-side session layer for REST APIs.

Attaches credentials to outgoing requests, refreshes them when the API
answers 401, and makes sure concurrent requests share a single refresh
instead of racing each other into a logout.
"""

__version__ = "0.1.0"
