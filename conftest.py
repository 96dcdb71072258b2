"""Makes the top-level script modules importable when pytest runs from a checkout."""
