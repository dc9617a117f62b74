"""HTTP layer: schemas, dependencies and routers."""
