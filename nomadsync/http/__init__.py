"""HTTP cross-cutting helpers for the remote sync endpoint."""
