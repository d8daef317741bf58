"""Provision a disposable qemu dev VM with a container runtime inside."""

__version__ = '0.1.0'
