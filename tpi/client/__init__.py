"""BMC client: authentication, requests, uploads and progress tracking."""
