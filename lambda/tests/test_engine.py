"""Unit tests for the tag engine wiring."""

import pytest
from unittest.mock import patch, MagicMock

from engine import TagEngine
from org_tagging.config import Settings
from org_tagging.errors import AuthorizationError
from org_tagging.account_tagger import AccountTaggingResult


@pytest.fixture
def settings():
    return Settings(
        region="us-east-1",
        target_regions=["us-east-1", "eu-west-1"],
        sns_topic_arn="arn:aws:sns:us-east-1:123456789012:org-tagging-alerts",
        propagation_actor="/org-tag-propagation",
    )


class TestTagEngine:
    """Tests for TagEngine."""

    @patch("engine.load_tag_policy")
    def test_policy_is_loaded_once(self, mock_load, settings):
        engine = TagEngine(settings)

        engine.policy
        engine.policy

        mock_load.assert_called_once_with(
            "TagComplianceRules", "us-east-1", enforce_values=False, retry_attempts=4
        )

    def test_given_policy_is_used(self, settings, sample_policy):
        assert TagEngine(settings, sample_policy).policy is sample_policy

    @patch("engine.boto3")
    def test_propagator_uses_settings(self, mock_boto3, settings, sample_policy):
        propagator = TagEngine(settings, sample_policy).propagator()

        assert propagator.marker == "org-tag-propagator"
        assert propagator.actor == "/org-tag-propagation"
        assert propagator.max_depth == 6
        mock_boto3.client.assert_called_once_with("organizations")

    def test_deployment_target_from_cfn_properties(self, settings, sample_policy):
        target = TagEngine(settings, sample_policy).deployment_target({
            "OrganizationId": "o-acme",
            "Regions": ["eu-west-1"],
            "OrganizationalUnitIds": ["ou-root-apps"],
        })

        assert target.organization_id == "o-acme"
        assert target.regions == ("eu-west-1",)
        assert target.unit_ids == ("ou-root-apps",)
        assert target.account_ids == ()

    def test_deployment_target_defaults_to_target_regions(self, settings, sample_policy):
        target = TagEngine(settings, sample_policy).deployment_target({"organization_id": "o-acme"})
        assert target.regions == ("us-east-1", "eu-west-1")


class TestTagAccounts:
    """Tests for TagEngine.tag_accounts."""

    @pytest.fixture
    def engine(self, settings, sample_policy, sample_org):
        engine = TagEngine(settings, sample_policy)
        engine._org = sample_org
        engine.notify = MagicMock()
        return engine

    def test_sweeps_all_accounts(self, engine):
        tagger = MagicMock()
        tagger.tag_account.side_effect = lambda account_id, overrides: AccountTaggingResult(account_id)

        with patch.object(TagEngine, "account_tagger", return_value=tagger):
            results = engine.tag_accounts()

        assert [r["account_id"] for r in results] == ["111111111111", "222222222222", "333333333333"]
        engine.notify.assert_not_called()

    def test_account_failure_is_isolated(self, engine):
        """Test one account's failure does not stop the sweep."""
        def tag_account(account_id, overrides):
            if account_id == "222222222222":
                raise AuthorizationError("Role OrgTaggingRole absent", account_id)
            return AccountTaggingResult(account_id)

        tagger = MagicMock()
        tagger.tag_account.side_effect = tag_account

        with patch.object(TagEngine, "account_tagger", return_value=tagger):
            results = engine.tag_accounts(["111111111111", "222222222222", "333333333333"])

        assert results[1] == {
            "account_id": "222222222222",
            "error": {"target": "222222222222", "kind": "AuthorizationError", "cause": "Role OrgTaggingRole absent"},
        }
        assert results[2]["account_id"] == "333333333333"
        engine.notify.assert_called_once_with("tagger", "222222222222", [results[1]["error"]])

    def test_resource_failures_notify(self, engine):
        failed = AccountTaggingResult("111111111111", failures=[{"target": "arn", "kind": "TaggingError", "cause": "x"}])
        tagger = MagicMock()
        tagger.tag_account.return_value = failed

        with patch.object(TagEngine, "account_tagger", return_value=tagger):
            engine.tag_accounts(["111111111111"], overrides={"Owner": "platform"})

        tagger.tag_account.assert_called_once_with("111111111111", {"Owner": "platform"})
        engine.notify.assert_called_once_with("tagger", "111111111111", failed.failures)
