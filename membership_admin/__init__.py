"""Authorization, flag grants and audit trail for the membership administration API."""
