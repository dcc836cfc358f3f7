#!/usr/bin/env python3
"""
OpenAPI specification generator for FleetDocs.

This script generates an OpenAPI specification for the FleetDocs API.
"""

from pathlib import Path

import yaml
from fastapi.openapi.utils import get_openapi

from fleetdocs.api import create_app


def generate_openapi_spec(output_dir: Path = None) -> Path:
    """Generate OpenAPI specification.

    Returns:
        Path of the written file
    """
    # Create FastAPI app
    app = create_app()

    # Generate OpenAPI schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description="Fleet document expiry API",
        routes=app.routes,
        tags=app.openapi_tags,
    )

    # Create openapi directory if it doesn't exist
    openapi_dir = output_dir or Path(__file__).parent.parent / "openapi"
    openapi_dir.mkdir(parents=True, exist_ok=True)

    # Write OpenAPI spec to YAML file
    openapi_path = openapi_dir / "fleetdocs.yaml"
    with open(openapi_path, "w") as f:
        yaml.safe_dump(openapi_schema, f, sort_keys=False, allow_unicode=True)
    print(f"OpenAPI specification written to {openapi_path}")
    return openapi_path


if __name__ == "__main__":
    generate_openapi_spec()
