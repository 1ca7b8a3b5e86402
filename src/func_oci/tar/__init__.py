"""Project walking and layer construction."""
