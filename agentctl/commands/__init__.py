from . import check, nodes, takeover

__all__ = ['check', 'nodes', 'takeover']
