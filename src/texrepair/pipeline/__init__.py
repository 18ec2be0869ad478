from .fix_rules import RULES, apply_rule_based_fix, apply_rule_based_fixes
from .latex_repair_agent import LatexRepairAgent
from .robust_compilation import RobustCompiler, run_robust_compilation

__all__ = [
    "RULES",
    "apply_rule_based_fix",
    "apply_rule_based_fixes",
    "LatexRepairAgent",
    "RobustCompiler",
    "run_robust_compilation",
]
