"""Unit tests for environment configuration."""

import os
import pytest

from org_tagging.config import Settings


class TestSettings:
    """Tests for Settings.from_env."""

    def test_defaults(self, monkeypatch):
        for name in ("TARGET_REGIONS", "SNS_TOPIC_ARN", "PROPAGATION_ACTOR", "AWS_LAMBDA_FUNCTION_NAME"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.region == "us-east-1"
        assert settings.target_regions == ["us-east-1"]
        assert settings.failure_tolerance_percentage == 10
        assert settings.max_concurrent_percentage == 25
        assert settings.sns_topic_arn is None
        assert settings.propagation_actor is None
        assert settings.taggable_resource_types is None

    def test_lists_are_comma_separated(self, monkeypatch):
        monkeypatch.setenv("TARGET_REGIONS", "us-east-1, eu-west-1,")
        monkeypatch.setenv("TAGGABLE_RESOURCE_TYPES", "AWS::EC2::Instance,AWS::S3::Bucket")

        settings = Settings.from_env()

        assert settings.target_regions == ["us-east-1", "eu-west-1"]
        assert settings.taggable_resource_types == ["AWS::EC2::Instance", "AWS::S3::Bucket"]

    def test_actor_defaults_to_function_name(self, monkeypatch):
        """Test our own writes are recognised by the Lambda function's session name."""
        monkeypatch.delenv("PROPAGATION_ACTOR", raising=False)
        monkeypatch.setenv("AWS_LAMBDA_FUNCTION_NAME", "org-tag-propagation")

        assert Settings.from_env().propagation_actor == "/org-tag-propagation"

    def test_explicit_actor(self, monkeypatch):
        monkeypatch.setenv("PROPAGATION_ACTOR", "/OrgTaggingRole/propagator")
        assert Settings.from_env().propagation_actor == "/OrgTaggingRole/propagator"

    def test_enforce_values_flag(self, monkeypatch):
        monkeypatch.setenv("ENFORCE_TAG_VALUES", "True")
        assert Settings.from_env().enforce_tag_values is True

    def test_invalid_integer(self, monkeypatch):
        monkeypatch.setenv("PROPAGATION_WORKERS", "many")
        with pytest.raises(ValueError, match="PROPAGATION_WORKERS"):
            Settings.from_env()

    def test_percentage_out_of_range(self, monkeypatch):
        monkeypatch.setenv("FAILURE_TOLERANCE_PERCENTAGE", "150")
        with pytest.raises(ValueError, match="between 0 and 100"):
            Settings.from_env()

    def test_workers_at_least_one(self, monkeypatch):
        monkeypatch.setenv("PROPAGATION_WORKERS", "0")
        assert Settings.from_env().propagation_workers == 1
