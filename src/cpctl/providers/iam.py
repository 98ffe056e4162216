"""AWS IAM roles and policies created for EKS-hosted control planes.

Every creation has a matching deletion, and every deletion treats a missing
entity as already deleted so teardown can run after a partial creation.
"""
from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import ClientError

from ..config import IAMConfig
from ..retry import RetryExhaustedError, retry

RESOURCE_MANAGER_ROLE = "cpctl-resource-manager"
RUNTIME_MANAGEMENT_ROLE = "cpctl-runtime-management"
SERVICE_ACCOUNT_ROLE = "cpctl-sa"
RUNTIME_SERVICE_ACCOUNT = "cpctl-runtime-sa"
MANAGED_POLICY_PREFIX = "cpctl-"
DEFAULT_SESSION_DURATION = 3600

RESOURCE_MANAGER_ACTIONS = ("ec2:*", "eks:*", "iam:*", "sts:GetCallerIdentity")
RUNTIME_MANAGEMENT_ACTIONS = (
    "ec2:Describe*",
    "eks:Describe*",
    "eks:List*",
    "eks:UpdateNodegroupConfig",
    "sts:GetCallerIdentity",
)


class IdentityError(RuntimeError):
    """Raised when an IAM or STS call fails."""


@dataclass(frozen=True, slots=True)
class AccessKey:
    """Credentials issued to an IAM service account user."""

    user_name: str
    access_key_id: str
    secret_access_key: str


def role_name(prefix: str, cluster: str) -> str:
    """Return the IAM role name for *prefix* and *cluster*."""
    return f"{prefix}-{cluster}"[:64]


def is_not_found(exc: ClientError) -> bool:
    """Return True when *exc* reports a missing entity."""
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in {"NoSuchEntity", "NoSuchEntityException", "ResourceNotFoundException"} or (
        code.endswith(".NotFound")
    )


def _trust_policy(principal: Mapping[str, Any], *, condition: Mapping[str, Any] | None = None) -> str:
    statement: dict[str, Any] = {
        "Effect": "Allow",
        "Principal": dict(principal),
        "Action": "sts:AssumeRoleWithWebIdentity" if "Federated" in principal else "sts:AssumeRole",
    }
    if condition:
        statement["Condition"] = dict(condition)
    return json.dumps({"Version": "2012-10-17", "Statement": [statement]})


def _permission_policy(actions: Iterable[str]) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [{"Effect": "Allow", "Action": list(actions), "Resource": "*"}],
        }
    )


def assume_role_policy(role_arn: str) -> str:
    """Return a policy document allowing ``sts:AssumeRole`` on *role_arn*."""
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": "AssumeRole",
                    "Effect": "Allow",
                    "Action": ["sts:AssumeRole"],
                    "Resource": [role_arn],
                }
            ],
        }
    )


class IdentityManager:
    """Create and delete IAM identities through a boto3 session."""

    def __init__(
        self,
        session: boto3.Session,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Bind the manager to *session*."""
        self.session = session
        self.iam = session.client("iam")
        self.sts = session.client("sts")
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Caller and role assumption
    # ------------------------------------------------------------------
    def caller_identity(self) -> dict[str, str]:
        """Return the STS caller identity (``Account``, ``Arn``, ``UserId``)."""
        try:
            response = self.sts.get_caller_identity()
        except ClientError as exc:
            raise IdentityError(f"failed to get caller identity: {exc}") from exc
        return {key: str(response[key]) for key in ("Account", "Arn", "UserId") if key in response}

    def assume_role(
        self,
        role_arn: str,
        *,
        session_name: str,
        duration: int = DEFAULT_SESSION_DURATION,
    ) -> boto3.Session:
        """Assume *role_arn* and return a session holding its credentials."""
        try:
            response = self.sts.assume_role(
                RoleArn=role_arn,
                RoleSessionName=session_name,
                DurationSeconds=duration,
            )
        except ClientError as exc:
            raise IdentityError(f"failed to assume role {role_arn}: {exc}") from exc
        credentials = response["Credentials"]
        return boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self.session.region_name,
        )

    def wait_for_propagation(self, session: boto3.Session, budget: IAMConfig) -> None:
        """Poll until *session*'s credentials are accepted, then let IAM settle."""
        sts = session.client("sts")
        try:
            retry(
                sts.get_caller_identity,
                attempts=budget.attempts,
                delay=budget.delay,
                retry_on=(ClientError,),
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            raise IdentityError(f"assumed role credentials never became valid: {exc}") from exc
        if budget.settle > 0:
            self._sleep(budget.settle)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_resource_manager_role(self, cluster: str, account_id: str) -> str:
        """Create the role assumed to build the runtime; return its ARN."""
        name = role_name(RESOURCE_MANAGER_ROLE, cluster)
        return self._create_role_with_policy(
            name,
            _trust_policy({"AWS": f"arn:aws:iam::{account_id}:root"}),
            RESOURCE_MANAGER_ACTIONS,
            description=f"Resource manager for control plane runtime {cluster}",
        )

    def create_runtime_management_role(self, cluster: str, account_id: str) -> str:
        """Create the role the control plane uses to manage its runtime."""
        name = role_name(RUNTIME_MANAGEMENT_ROLE, cluster)
        return self._create_role_with_policy(
            name,
            _trust_policy({"AWS": f"arn:aws:iam::{account_id}:root"}),
            RUNTIME_MANAGEMENT_ACTIONS,
            description=f"Runtime management for control plane runtime {cluster}",
        )

    def create_policy(self, name: str, document: str, *, description: str = "") -> str:
        """Create a customer managed policy and return its ARN."""
        try:
            response = self.iam.create_policy(
                PolicyName=name,
                PolicyDocument=document,
                Description=description,
            )
        except ClientError as exc:
            raise IdentityError(f"failed to create policy {name}: {exc}") from exc
        return str(response["Policy"]["Arn"])

    def create_service_account_role(
        self,
        name: str,
        *,
        oidc_provider_arn: str,
        oidc_issuer: str,
        namespace: str,
        service_account: str,
        policy_arns: Iterable[str] = (),
    ) -> str:
        """Create a role assumable by a Kubernetes service account via OIDC."""
        issuer_host = oidc_issuer.removeprefix("https://")
        trust = _trust_policy(
            {"Federated": oidc_provider_arn},
            condition={
                "StringEquals": {
                    f"{issuer_host}:sub": f"system:serviceaccount:{namespace}:{service_account}",
                    f"{issuer_host}:aud": "sts.amazonaws.com",
                }
            },
        )
        arn = self._create_role(name, trust, description=f"Service account {service_account}")
        try:
            for policy_arn in policy_arns:
                self._attach(name, policy_arn)
        except IdentityError:
            self._roll_back(f"role {name}", lambda: self.delete_role(name, delete_policies=False))
            raise
        return arn

    def create_service_account(self, cluster: str, policy_arn: str) -> AccessKey:
        """Create an IAM user holding *policy_arn* and issue it an access key."""
        user = role_name(RUNTIME_SERVICE_ACCOUNT, cluster)
        try:
            self.iam.create_user(UserName=user, Tags=[{"Key": "managed-by", "Value": "cpctl"}])
        except ClientError as exc:
            raise IdentityError(f"failed to create service account {user}: {exc}") from exc
        try:
            self.iam.attach_user_policy(UserName=user, PolicyArn=policy_arn)
            key = self.iam.create_access_key(UserName=user)["AccessKey"]
        except ClientError as exc:
            self._roll_back(
                f"user {user}", lambda: self.delete_service_account(user, delete_policies=False)
            )
            raise IdentityError(f"failed to create service account {user}: {exc}") from exc
        return AccessKey(
            user_name=user,
            access_key_id=str(key["AccessKeyId"]),
            secret_access_key=str(key["SecretAccessKey"]),
        )

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    def delete_role(self, name: str, *, delete_policies: bool = True) -> None:
        """Detach and delete the role's policies, then the role itself.

        With *delete_policies* False, cpctl managed policies are only
        detached. A role that no longer exists is treated as deleted.
        """
        try:
            attached = self.iam.list_attached_role_policies(RoleName=name)["AttachedPolicies"]
            for policy in attached:
                arn = str(policy["PolicyArn"])
                self._ignore_missing(self.iam.detach_role_policy, RoleName=name, PolicyArn=arn)
                if delete_policies and f":policy/{MANAGED_POLICY_PREFIX}" in arn:
                    self.delete_policy(arn)
            inline = self.iam.list_role_policies(RoleName=name)["PolicyNames"]
            for policy_name in inline:
                self._ignore_missing(
                    self.iam.delete_role_policy, RoleName=name, PolicyName=policy_name
                )
            self.iam.delete_role(RoleName=name)
        except ClientError as exc:
            if is_not_found(exc):
                return
            raise IdentityError(f"failed to delete role {name}: {exc}") from exc

    def delete_service_account(self, user: str, *, delete_policies: bool = True) -> None:
        """Delete the user's access keys and policies, then the user.

        With *delete_policies* False, cpctl managed policies are only
        detached. A user that no longer exists is treated as deleted.
        """
        try:
            keys = self.iam.list_access_keys(UserName=user)["AccessKeyMetadata"]
            for key in keys:
                self._ignore_missing(
                    self.iam.delete_access_key, UserName=user, AccessKeyId=key["AccessKeyId"]
                )
            attached = self.iam.list_attached_user_policies(UserName=user)["AttachedPolicies"]
            for policy in attached:
                arn = str(policy["PolicyArn"])
                self._ignore_missing(self.iam.detach_user_policy, UserName=user, PolicyArn=arn)
                if delete_policies and f":policy/{MANAGED_POLICY_PREFIX}" in arn:
                    self.delete_policy(arn)
            self.iam.delete_user(UserName=user)
        except ClientError as exc:
            if is_not_found(exc):
                return
            raise IdentityError(f"failed to delete service account {user}: {exc}") from exc

    def delete_policy(self, policy_arn: str) -> None:
        """Delete a customer managed policy; a missing policy is not an error."""
        try:
            self.iam.delete_policy(PolicyArn=policy_arn)
        except ClientError as exc:
            if is_not_found(exc):
                return
            raise IdentityError(f"failed to delete policy {policy_arn}: {exc}") from exc

    # Internal helpers -------------------------------------------------
    def _create_role_with_policy(
        self,
        name: str,
        trust_policy: str,
        actions: Iterable[str],
        *,
        description: str,
    ) -> str:
        arn = self._create_role(name, trust_policy, description=description)
        try:
            policy_arn = self.create_policy(
                f"{name}-policy"[:128],
                _permission_policy(actions),
                description=description,
            )
        except IdentityError:
            self._roll_back(f"role {name}", lambda: self.delete_role(name))
            raise
        try:
            self._attach(name, policy_arn)
        except IdentityError:
            self._roll_back(f"role {name}", lambda: self.delete_role(name))
            self._roll_back(f"policy {policy_arn}", lambda: self.delete_policy(policy_arn))
            raise
        return arn

    def _create_role(self, name: str, trust_policy: str, *, description: str) -> str:
        try:
            response = self.iam.create_role(
                RoleName=name,
                AssumeRolePolicyDocument=trust_policy,
                Description=description,
                Tags=[{"Key": "managed-by", "Value": "cpctl"}],
            )
        except ClientError as exc:
            raise IdentityError(f"failed to create role {name}: {exc}") from exc
        return str(response["Role"]["Arn"])

    def _attach(self, role: str, policy_arn: str) -> None:
        try:
            self.iam.attach_role_policy(RoleName=role, PolicyArn=policy_arn)
        except ClientError as exc:
            raise IdentityError(f"failed to attach {policy_arn} to {role}: {exc}") from exc

    @staticmethod
    def _roll_back(label: str, undo: Callable[[], object]) -> None:
        """Remove what a half finished creation left behind."""
        try:
            undo()
        except (ClientError, IdentityError) as exc:
            raise IdentityError(f"{label} was left behind, remove it manually: {exc}") from exc

    @staticmethod
    def _ignore_missing(method: Callable[..., Any], **kwargs: Any) -> None:
        try:
            method(**kwargs)
        except ClientError as exc:
            if not is_not_found(exc):
                raise


__all__ = [
    "AccessKey",
    "IdentityError",
    "IdentityManager",
    "RESOURCE_MANAGER_ROLE",
    "RUNTIME_MANAGEMENT_ROLE",
    "RUNTIME_SERVICE_ACCOUNT",
    "SERVICE_ACCOUNT_ROLE",
    "assume_role_policy",
    "is_not_found",
    "role_name",
]
