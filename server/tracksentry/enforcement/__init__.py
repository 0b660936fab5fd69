"""Filter-rule bookkeeping and deferred blocking."""
