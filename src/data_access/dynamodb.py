import logging
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError
from datetime import datetime
from typing import Any
from pydantic_core import to_jsonable_python

from models.base import utc_now
from models.donation import Donation
from models.payment_request import PaymentRequest
from models.project import Project, ProjectUpdate, RewardTier
from models.user import User

logger = logging.getLogger(__name__)

USER_PREFIX = "USER#"
PROJECT_PREFIX = "PROJECT#"
SLUG_PREFIX = "SLUG#"
DONATION_PREFIX = "DONATION#"
PAYMENT_REQUEST_PREFIX = "PAYMENT_REQUEST#"
PROFILE_SK = "PROFILE"
METADATA_SK = "METADATA"
SLUG_SK = "PROJECT"
PENDING_REQUEST_SK = "PENDING_REQUEST"
TOTALS_PK = "TOTALS"
DONATION_SUM_SK = "DONATION_SUM"

ENTITY_INDEX = "EntityIndex"
CREATOR_INDEX = "CreatorIndex"
PROJECT_INDEX = "ProjectIndex"
DONOR_INDEX = "DonorIndex"
TRANSACTION_INDEX = "TransactionIndex"
RECENT_DONATIONS_INDEX = "RecentDonationsIndex"

USER_ENTITY = "USER"
PROJECT_ENTITY = "PROJECT"
DONATION_ENTITY = "DONATION"
PAYMENT_REQUEST_ENTITY = "PAYMENT_REQUEST"

# Fields only the settlement/refund counters may touch
PROJECT_COUNTER_FIELDS = frozenset({"current_amount", "admin_fee_amount", "backer_count"})


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response['Error']['Code'] == 'ConditionalCheckFailedException'


def _to_item(model, entity_type: str, pk: str, sk: str) -> dict:
    item = model.model_dump(mode="json", exclude_none=True)
    item.update({"PK": pk, "SK": sk, "entity_type": entity_type})
    return item


def _build_set_expression(fields: dict[str, Any]) -> tuple[str, dict, dict]:
    names = {}
    values = {}
    assignments = []
    for index, (field, value) in enumerate(fields.items()):
        names[f"#f{index}"] = field
        values[f":v{index}"] = to_jsonable_python(value)
        assignments.append(f"#f{index} = :v{index}")
    return "SET " + ", ".join(assignments), names, values


class DynamoDataAccess:
    def __init__(self, table):
        self.table = table

    def _query_all(self, **kwargs) -> list[dict]:
        items = []
        while True:
            response = self.table.query(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def _update(self, key: dict, fields: dict[str, Any], condition=None,
                condition_names: dict | None = None, condition_values: dict | None = None) -> dict | None:
        fields = {**fields, "updated_at": utc_now()}
        expression, names, values = _build_set_expression(fields)
        params = {
            "Key": key,
            "UpdateExpression": expression,
            "ExpressionAttributeNames": {**names, **(condition_names or {})},
            "ExpressionAttributeValues": {**values, **(condition_values or {})},
            "ReturnValues": "ALL_NEW",
        }
        if condition:
            params["ConditionExpression"] = condition
        try:
            response = self.table.update_item(**params)
            return response.get("Attributes", {})
        except ClientError as e:
            if condition and _is_conditional_failure(e):
                return None
            logger.error(f"Error updating item {key}: {e}")
            raise

    # Users

    def create_user(self, user: User) -> User | None:
        item = _to_item(user, USER_ENTITY, f"{USER_PREFIX}{user.user_id}", PROFILE_SK)
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(PK)"
            )
            return user
        except ClientError as e:
            if _is_conditional_failure(e):
                logger.info(f"User profile already exists for {user.user_id}")
                return None
            raise

    def get_user(self, user_id: str) -> User | None:
        response = self.table.get_item(Key={"PK": f"{USER_PREFIX}{user_id}", "SK": PROFILE_SK})
        item = response.get("Item")
        return User.model_validate(item) if item else None

    def update_user(self, user_id: str, fields: dict[str, Any]) -> User | None:
        attributes = self._update(
            {"PK": f"{USER_PREFIX}{user_id}", "SK": PROFILE_SK},
            fields,
            condition="attribute_exists(PK)",
        )
        return User.model_validate(attributes) if attributes else None

    def delete_user(self, user_id: str) -> None:
        self.table.delete_item(Key={"PK": f"{USER_PREFIX}{user_id}", "SK": PROFILE_SK})

    def list_users(self) -> list[User]:
        items = self._query_all(
            IndexName=ENTITY_INDEX,
            KeyConditionExpression=Key("entity_type").eq(USER_ENTITY),
            ScanIndexForward=False,
        )
        return [User.model_validate(item) for item in items]

    # Projects

    def claim_slug(self, slug: str, project_id: str) -> bool:
        try:
            self.table.put_item(
                Item={"PK": f"{SLUG_PREFIX}{slug}", "SK": SLUG_SK, "project_id": project_id},
                ConditionExpression="attribute_not_exists(PK)"
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    def release_slug(self, slug: str) -> None:
        self.table.delete_item(Key={"PK": f"{SLUG_PREFIX}{slug}", "SK": SLUG_SK})

    def create_project(self, project: Project) -> Project:
        item = _to_item(project, PROJECT_ENTITY, f"{PROJECT_PREFIX}{project.project_id}", METADATA_SK)
        self.table.put_item(Item=item)
        return project

    def get_project(self, project_id: str) -> Project | None:
        response = self.table.get_item(Key={"PK": f"{PROJECT_PREFIX}{project_id}", "SK": METADATA_SK})
        item = response.get("Item")
        return Project.model_validate(item) if item else None

    def get_project_by_slug(self, slug: str) -> Project | None:
        response = self.table.get_item(Key={"PK": f"{SLUG_PREFIX}{slug}", "SK": SLUG_SK})
        item = response.get("Item")
        if not item:
            return None
        return self.get_project(item["project_id"])

    def update_project(self, project_id: str, fields: dict[str, Any]) -> Project | None:
        if PROJECT_COUNTER_FIELDS & fields.keys():
            raise ValueError("Project counters can only change through credit_project/debit_project")
        attributes = self._update(
            {"PK": f"{PROJECT_PREFIX}{project_id}", "SK": METADATA_SK},
            fields,
            condition="attribute_exists(PK)",
        )
        return Project.model_validate(attributes) if attributes else None

    def append_project_update(self, project_id: str, update: ProjectUpdate) -> Project:
        response = self.table.update_item(
            Key={"PK": f"{PROJECT_PREFIX}{project_id}", "SK": METADATA_SK},
            UpdateExpression="SET #updates = list_append(if_not_exists(#updates, :empty), :update), #updated_at = :now",
            ExpressionAttributeNames={"#updates": "updates", "#updated_at": "updated_at"},
            ExpressionAttributeValues={
                ":empty": [],
                ":update": [update.model_dump(mode="json")],
                ":now": to_jsonable_python(utc_now()),
            },
            ReturnValues="ALL_NEW"
        )
        return Project.model_validate(response["Attributes"])

    def _adjust_project(self, project_id: str, amount: int, admin_fee: int, backers: int,
                        tier_index: int | None) -> dict:
        expression = "ADD #current :amount, #fee :fee, #backers :backers SET #updated_at = :now"
        names = {
            "#current": "current_amount",
            "#fee": "admin_fee_amount",
            "#backers": "backer_count",
            "#updated_at": "updated_at",
        }
        values = {
            ":amount": amount,
            ":fee": admin_fee,
            ":backers": backers,
            ":now": to_jsonable_python(utc_now()),
        }
        if tier_index is not None:
            expression += f", #tiers[{tier_index}].#tier_backers = #tiers[{tier_index}].#tier_backers + :backers"
            names.update({"#tiers": "reward_tiers", "#tier_backers": "current_backers"})

        try:
            response = self.table.update_item(
                Key={"PK": f"{PROJECT_PREFIX}{project_id}", "SK": METADATA_SK},
                UpdateExpression=expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW"
            )
            return response["Attributes"]
        except ClientError as e:
            logger.error(f"Error adjusting totals for project {project_id}: {e}")
            raise

    def credit_project(self, project_id: str, amount: int, admin_fee: int,
                       tier_index: int | None = None) -> Project:
        return Project.model_validate(self._adjust_project(project_id, amount, admin_fee, 1, tier_index))

    def debit_project(self, project_id: str, amount: int, admin_fee: int,
                      tier_index: int | None = None) -> Project:
        attributes = self._adjust_project(project_id, -amount, -admin_fee, -1, tier_index)
        # Counters never go below zero
        corrections = {
            field: 0
            for field in PROJECT_COUNTER_FIELDS
            if attributes.get(field, 0) < 0
        }
        if tier_index is not None and attributes["reward_tiers"][tier_index]["current_backers"] < 0:
            corrections["reward_tiers"] = [
                RewardTier.model_validate({**tier, "current_backers": max(0, tier["current_backers"])})
                for tier in attributes["reward_tiers"]
            ]
        if corrections:
            attributes = self._update(
                {"PK": f"{PROJECT_PREFIX}{project_id}", "SK": METADATA_SK},
                corrections,
            )
        return Project.model_validate(attributes)

    def delete_project(self, project: Project) -> None:
        self.table.delete_item(Key={"PK": f"{PROJECT_PREFIX}{project.project_id}", "SK": METADATA_SK})
        self.release_slug(project.slug)

    def list_projects(self) -> list[Project]:
        items = self._query_all(
            IndexName=ENTITY_INDEX,
            KeyConditionExpression=Key("entity_type").eq(PROJECT_ENTITY),
            ScanIndexForward=False,
        )
        return [Project.model_validate(item) for item in items]

    def list_projects_by_creator(self, creator_id: str) -> list[Project]:
        items = self._query_all(
            IndexName=CREATOR_INDEX,
            KeyConditionExpression=Key("creator_id").eq(creator_id),
            FilterExpression=Attr("entity_type").eq(PROJECT_ENTITY),
            ScanIndexForward=False,
        )
        return [Project.model_validate(item) for item in items]

    # Donations

    def create_donation_record(self, donation: Donation) -> Donation:
        item = _to_item(donation, DONATION_ENTITY, f"{DONATION_PREFIX}{donation.donation_id}", METADATA_SK)
        self.table.put_item(Item=item)
        return donation

    def get_donation(self, donation_id: str) -> Donation | None:
        response = self.table.get_item(Key={"PK": f"{DONATION_PREFIX}{donation_id}", "SK": METADATA_SK})
        item = response.get("Item")
        return Donation.model_validate(item) if item else None

    def get_donation_by_transaction(self, transaction_id: str) -> Donation | None:
        response = self.table.query(
            IndexName=TRANSACTION_INDEX,
            KeyConditionExpression=Key("transaction_id").eq(transaction_id),
            Limit=1
        )
        items = response.get("Items", [])
        return Donation.model_validate(items[0]) if items else None

    def update_donation(self, donation_id: str, fields: dict[str, Any]) -> Donation | None:
        attributes = self._update(
            {"PK": f"{DONATION_PREFIX}{donation_id}", "SK": METADATA_SK},
            fields,
            condition="attribute_exists(PK)",
        )
        return Donation.model_validate(attributes) if attributes else None

    def update_donation_status(self, donation_id: str, status: str, expected_status: str,
                               **fields) -> Donation | None:
        """Move a donation between payment states; None when it is no longer in expected_status."""
        attributes = self._update(
            {"PK": f"{DONATION_PREFIX}{donation_id}", "SK": METADATA_SK},
            {"payment_status": status, **fields},
            condition="#expected_field = :expected",
            condition_names={"#expected_field": "payment_status"},
            condition_values={":expected": expected_status},
        )
        if attributes is None:
            logger.info(f"Idempotency check: Donation {donation_id} is no longer {expected_status}.")
            return None
        return Donation.model_validate(attributes)

    def update_reward_status(self, donation_id: str, status: str) -> Donation | None:
        attributes = self._update(
            {"PK": f"{DONATION_PREFIX}{donation_id}", "SK": METADATA_SK},
            {"reward_status": status},
            condition="#reward = :pending AND #payment = :success",
            condition_names={"#reward": "reward_status", "#payment": "payment_status"},
            condition_values={":pending": "pending", ":success": "success"},
        )
        return Donation.model_validate(attributes) if attributes else None

    def list_donations(self) -> list[Donation]:
        items = self._query_all(
            IndexName=ENTITY_INDEX,
            KeyConditionExpression=Key("entity_type").eq(DONATION_ENTITY),
            ScanIndexForward=False,
        )
        return [Donation.model_validate(item) for item in items]

    def list_donations_by_project(self, project_id: str) -> list[Donation]:
        items = self._query_all(
            IndexName=PROJECT_INDEX,
            KeyConditionExpression=Key("project_id").eq(project_id),
            FilterExpression=Attr("entity_type").eq(DONATION_ENTITY),
            ScanIndexForward=False,
        )
        return [Donation.model_validate(item) for item in items]

    def list_donations_by_donor(self, donor_id: str) -> list[Donation]:
        items = self._query_all(
            IndexName=DONOR_INDEX,
            KeyConditionExpression=Key("donor_id").eq(donor_id),
            ScanIndexForward=False,
        )
        return [Donation.model_validate(item) for item in items]

    def get_recent_donations(self, limit=10) -> list[Donation]:
        try:
            response = self.table.query(
                IndexName=RECENT_DONATIONS_INDEX,
                KeyConditionExpression=Key("payment_status").eq("success"),
                ScanIndexForward=False,
                Limit=limit
            )
            return [Donation.model_validate(item) for item in response.get("Items", [])]
        except ClientError as e:
            logger.error(f"Error getting recent donations: {e}")
            raise

    def update_total_donations(self, amount: int, admin_fee: int, count: int = 1):
        try:
            self.table.update_item(
                Key={
                    "PK": TOTALS_PK,
                    "SK": DONATION_SUM_SK
                },
                UpdateExpression="ADD #total :amount, #fees :fee, #count :count",
                ExpressionAttributeNames={
                    "#total": "TotalAmount",
                    "#fees": "TotalAdminFees",
                    "#count": "DonationCount"
                },
                ExpressionAttributeValues={
                    ":amount": amount,
                    ":fee": admin_fee,
                    ":count": count
                },
            )
        except ClientError as e:
            logger.error(f"Error updating total donations: {e}")
            raise

    def get_total_donations(self) -> dict:
        response = self.table.get_item(Key={"PK": TOTALS_PK, "SK": DONATION_SUM_SK})
        item = response.get("Item") or {}
        return {
            "total_amount": int(item.get("TotalAmount", 0)),
            "total_admin_fee": int(item.get("TotalAdminFees", 0)),
            "donation_count": int(item.get("DonationCount", 0)),
        }

    # Payment requests

    def claim_pending_request(self, project_id: str, request_id: str) -> bool:
        """One pending withdrawal per project, held by a marker item on the project partition."""
        try:
            self.table.put_item(
                Item={"PK": f"{PROJECT_PREFIX}{project_id}", "SK": PENDING_REQUEST_SK, "request_id": request_id},
                ConditionExpression="attribute_not_exists(PK)"
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    def release_pending_request(self, project_id: str, request_id: str) -> None:
        try:
            self.table.delete_item(
                Key={"PK": f"{PROJECT_PREFIX}{project_id}", "SK": PENDING_REQUEST_SK},
                ConditionExpression="request_id = :request_id",
                ExpressionAttributeValues={":request_id": request_id},
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                logger.warning(f"Pending marker for project {project_id} is not held by request {request_id}")
                return
            raise

    def create_payment_request(self, request: PaymentRequest) -> PaymentRequest:
        item = _to_item(
            request, PAYMENT_REQUEST_ENTITY, f"{PAYMENT_REQUEST_PREFIX}{request.request_id}", METADATA_SK
        )
        self.table.put_item(Item=item)
        return request

    def get_payment_request(self, request_id: str) -> PaymentRequest | None:
        response = self.table.get_item(Key={"PK": f"{PAYMENT_REQUEST_PREFIX}{request_id}", "SK": METADATA_SK})
        item = response.get("Item")
        return PaymentRequest.model_validate(item) if item else None

    def transition_payment_request(self, request_id: str, from_status: str, to_status: str,
                                   processed_by: str, processed_at: datetime,
                                   admin_notes: str | None = None) -> PaymentRequest | None:
        fields = {
            "status": to_status,
            "processed_by": processed_by,
            "processed_at": processed_at,
        }
        if admin_notes:
            fields["admin_notes"] = admin_notes
        attributes = self._update(
            {"PK": f"{PAYMENT_REQUEST_PREFIX}{request_id}", "SK": METADATA_SK},
            fields,
            condition="#current_status = :from_status",
            condition_names={"#current_status": "status"},
            condition_values={":from_status": from_status},
        )
        return PaymentRequest.model_validate(attributes) if attributes else None

    def list_payment_requests(self) -> list[PaymentRequest]:
        items = self._query_all(
            IndexName=ENTITY_INDEX,
            KeyConditionExpression=Key("entity_type").eq(PAYMENT_REQUEST_ENTITY),
            ScanIndexForward=False,
        )
        return [PaymentRequest.model_validate(item) for item in items]

    def list_payment_requests_by_project(self, project_id: str) -> list[PaymentRequest]:
        items = self._query_all(
            IndexName=PROJECT_INDEX,
            KeyConditionExpression=Key("project_id").eq(project_id),
            FilterExpression=Attr("entity_type").eq(PAYMENT_REQUEST_ENTITY),
            ScanIndexForward=False,
        )
        return [PaymentRequest.model_validate(item) for item in items]

    def list_payment_requests_by_creator(self, creator_id: str) -> list[PaymentRequest]:
        items = self._query_all(
            IndexName=CREATOR_INDEX,
            KeyConditionExpression=Key("creator_id").eq(creator_id),
            FilterExpression=Attr("entity_type").eq(PAYMENT_REQUEST_ENTITY),
            ScanIndexForward=False,
        )
        return [PaymentRequest.model_validate(item) for item in items]
