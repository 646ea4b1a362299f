from opportunityos.version import VERSION

__version__ = VERSION
