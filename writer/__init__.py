"""Output writers."""
__all__ = ['ResultExporter', 'ExportRecord', 'AuditRecord']

def __getattr__(name):
    if name in ('ResultExporter', 'ExportRecord', 'AuditRecord'):
        from . import exporter
        return getattr(exporter, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
