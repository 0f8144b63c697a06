"""Annotation keys and default values understood by the autoresizer."""

AUTO_RESIZE_ENABLED_KEY = "resize.topolvm.io/enabled"
"""StorageClass annotation that enables automatic resizing."""

RESIZE_THRESHOLD_ANNOTATION = "resize.topolvm.io/threshold"
"""PVC annotation holding the free-space threshold."""

RESIZE_INODES_THRESHOLD_ANNOTATION = "resize.topolvm.io/inodes-threshold"
"""PVC annotation holding the free-inodes threshold."""

RESIZE_INCREASE_ANNOTATION = "resize.topolvm.io/increase"
"""PVC annotation holding the amount to grow by."""

STORAGE_LIMIT_ANNOTATION = "resize.topolvm.io/storage_limit"
"""PVC annotation holding the maximum storage size."""

PREVIOUS_CAPACITY_BYTES_ANNOTATION = "resize.topolvm.io/pre_capacity_bytes"
"""PVC annotation recording the capacity before the last resize."""

INITIAL_RESIZE_GROUP_BY_ANNOTATION = "resize.topolvm.io/initial-resize-group-by"
"""PVC annotation naming the label that groups PVCs for initial sizing."""

DEFAULT_THRESHOLD = "10%"
DEFAULT_INODES_THRESHOLD = "10%"
DEFAULT_INCREASE = "10%"