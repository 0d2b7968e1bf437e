"""
Binding package.

- binders: per-value TypeBinder over a closed set of binder kinds
- bindset: BindSet, the ordered parameter or result vector of a statement
"""

from sqlbind.binding.binders import BinderKind, TypeBinder
from sqlbind.binding.bindset import BindSet
