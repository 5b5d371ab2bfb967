"""Outbound collaborators: price sources and the cache."""
