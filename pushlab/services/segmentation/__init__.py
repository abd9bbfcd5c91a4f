"""
User segmentation.

This module provides:
- The rule field catalog (rule type + field to profile attribute path)
- The rule compiler producing a membership predicate
- Segment registry and membership resolution
"""

from pushlab.services.segmentation.compiler import (
    Operator,
    SegmentationRule,
    SegmentPredicate,
    compile_rules,
    validate_rules,
)
from pushlab.services.segmentation.fields import FieldKind, RawField, RuleType, resolve_field

__all__ = [
    "Operator",
    "RuleType",
    "FieldKind",
    "RawField",
    "SegmentationRule",
    "SegmentPredicate",
    "compile_rules",
    "validate_rules",
    "resolve_field",
]
