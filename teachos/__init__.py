"""A teaching operating-system kernel modelled in Python: disk layout, buffer cache, log, file system, files and pipes, console, processes and scheduling."""

__version__ = "0.1.0"