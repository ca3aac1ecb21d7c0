"""Schema definitions for hierarchies and cell tables."""
__all__ = ['HierarchyTree', 'HierarchyNode', 'CellTable', 'Cell', 'CellStatus',
           'MicrodataRecord', 'TableBuilder']

def __getattr__(name):
    if name in ('HierarchyTree', 'HierarchyNode'):
        from .hierarchy import HierarchyTree, HierarchyNode
        return {'HierarchyTree': HierarchyTree, 'HierarchyNode': HierarchyNode}[name]
    elif name in ('CellTable', 'Cell', 'CellStatus', 'MicrodataRecord'):
        from . import table
        return getattr(table, name)
    elif name == 'TableBuilder':
        from .builder import TableBuilder
        return TableBuilder
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
