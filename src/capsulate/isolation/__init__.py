"""Per-agent isolation layers.

- ``dependencies``: three-tier (core / team / container) dependency
  composition through read-only tier mounts and in-container symlinks
- ``overlay``: optional copy-on-write view of the shared base repository
  (overlayfs base / diff / work / merged)
- ``script``: quoting shell-script builder and name validators used by both

Submodules are imported directly (``capsulate.isolation.overlay``) because
``capsulate.models`` depends on ``script`` for its validators.
"""
