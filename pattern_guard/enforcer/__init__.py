"""
Standard enforcer: compares candidate code against the pattern knowledge base
and heuristic rules, producing structured findings.
"""
