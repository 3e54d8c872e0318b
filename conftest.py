# Keeps the flat top-level modules importable when running pytest from a checkout.
