"""Secondary suppression strategies."""
__all__ = ['ConstraintGraph', 'SuppressionProblem', 'SuppressionPlan', 'get_solver',
           'ExactSolver', 'TopDownSolver', 'HypercubeSolver', 'SimpleSolver']

def __getattr__(name):
    if name == 'ConstraintGraph':
        from .constraints import ConstraintGraph
        return ConstraintGraph
    elif name in ('SuppressionProblem', 'SuppressionPlan', 'get_solver'):
        from .base import SuppressionProblem, SuppressionPlan, get_solver
        return {'SuppressionProblem': SuppressionProblem, 'SuppressionPlan': SuppressionPlan,
                'get_solver': get_solver}[name]
    elif name == 'ExactSolver':
        from .exact import ExactSolver
        return ExactSolver
    elif name == 'TopDownSolver':
        from .topdown import TopDownSolver
        return TopDownSolver
    elif name == 'HypercubeSolver':
        from .hypercube import HypercubeSolver
        return HypercubeSolver
    elif name == 'SimpleSolver':
        from .simple import SimpleSolver
        return SimpleSolver
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
