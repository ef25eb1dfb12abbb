"""RuleStack: package registry and distribution engine for versioned rulesets."""

__version__ = "0.1.0"
