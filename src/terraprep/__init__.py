"""terraprep - Cube-sphere sector and tile pyramid builder for planetary rasters."""

__version__ = "0.1.0"


# libvips prints module-loading warnings (jxl, magick, poppler) on first import.
# Must run before any pyvips import anywhere in the package.
def _load_vips():
    """Import pyvips once with its C-level stderr output discarded."""
    import logging
    import os
    import sys
    from contextlib import contextmanager

    logger = logging.getLogger(__name__)
    os.environ.setdefault("VIPS_WARNING", "0")

    @contextmanager
    def discard_fd(fd):
        saved = os.dup(fd)
        devnull = os.open(os.devnull, os.O_WRONLY)
        try:
            os.dup2(devnull, fd)
            yield
        finally:
            os.dup2(saved, fd)
            os.close(saved)
            os.close(devnull)

    try:
        fd = sys.stderr.fileno()
    except (AttributeError, OSError):
        fd = None

    try:
        if fd is None:
            import pyvips  # noqa: F401
        else:
            with discard_fd(fd):
                import pyvips  # noqa: F401
    except (ImportError, OSError) as e:
        # backends.py records the error and reports it to callers
        logger.debug("pyvips import failed: %s", e)


_load_vips()
del _load_vips
