from buildmend.classify.classifier import ErrorClassifier, ErrorRule, group_by_category

__all__ = ["ErrorClassifier", "ErrorRule", "group_by_category"]
