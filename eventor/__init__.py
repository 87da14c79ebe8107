"""Eventor: a minimal Kafka-wire-compatible broker (ApiVersions, DescribeTopicPartitions)."""

__version__ = "0.1.0"
