"""HTTP host service for the route map engine."""
