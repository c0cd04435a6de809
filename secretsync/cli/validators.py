"""Input validation for CLI arguments."""
import re
import sys

# Values file stems, e.g. acme-staging
DEPLOYMENT_PATTERN = r'^[a-zA-Z0-9][a-zA-Z0-9_-]*$'


def validate_deployment_name(name: str) -> None:
    """
    Validate a --deployment filter names a values file stem.

    Args:
        name: Deployment name to validate

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not re.match(DEPLOYMENT_PATTERN, name or ""):
        print(f"Error: Invalid deployment name '{name}'", file=sys.stderr)
        print("\nUse the values file name without extension, e.g.:", file=sys.stderr)
        print("  ✓ acme-staging      (values/deployments/acme-staging.yaml)", file=sys.stderr)
        print("  ✓ infrastructure    (all files in values/infrastructure/)", file=sys.stderr)
        print("  ✗ acme-staging.yaml (contains file extension)", file=sys.stderr)
        print("  ✗ ../acme           (contains path separators)", file=sys.stderr)
        sys.exit(2)
