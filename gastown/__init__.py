"""Gas Town orchestration core.

Hooks (persistent work containers), convoys (record bundles) and formulas
poured into molecules (DAG executions), composed by a patrol loop.
"""

__version__ = "0.3.0"
