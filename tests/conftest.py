"""
Shared fixtures and in-memory collaborators for the ClickHub tests
"""

import os
import sys
import itertools

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import SyncRegistry
from field_mapper import FieldMapper
from inflight import InFlightGuard


class FakeScheduler:
    """Recheck scheduler whose jobs only run when the test fires them"""

    def __init__(self):
        self.jobs = {}
        self.delays = {}

    def schedule(self, key, delay_seconds, func, *args):
        if key in self.jobs:
            return False
        self.jobs[key] = (func, args)
        self.delays[key] = delay_seconds
        return True

    def cancel(self, key):
        return self.jobs.pop(key, None) is not None

    def pending_keys(self):
        return list(self.jobs)

    def fire(self, key):
        func, args = self.jobs.pop(key)
        return func(*args)


class FakeHubSpot:
    """Source-side collaborator backed by dicts"""

    def __init__(self):
        self.objects = {}
        self.companies = {}
        self.history = {}
        self.owners = {"101": "agent@example.com"}
        self.updates = []

    def get_source_object(self, object_type, object_id):
        return self.objects.get((object_type, object_id))

    def get_company(self, company_id):
        return self.companies.get(company_id)

    def fetch_property_history(self, object_type, object_id, property_name):
        return self.history.get((object_type, object_id, property_name), [])

    def update_object_field(self, object_type, object_id, property_name, value):
        self.updates.append((object_type, object_id, property_name, value))
        return {}

    def record_url(self, object_type, object_id):
        type_id = "0-5" if object_type == "ticket" else "0-27"
        return f"https://app.hubspot.com/contacts/46493300/record/{type_id}/{object_id}"

    def resolve_email_by_directory_id(self, owner_id):
        return self.owners.get(str(owner_id))

    def resolve_directory_id_by_email(self, email):
        for owner_id, owner_email in self.owners.items():
            if owner_email == email:
                return owner_id
        return None


class FakeClickUp:
    """Target-side collaborator that records every call"""

    def __init__(self):
        self._ids = itertools.count(1)
        self.created = []
        self.updates = []
        self.custom_fields = []
        self.spaces = {}
        self.lists = {}
        self.members = {"agent@example.com": 555}
        self.before_create_return = None

    def create_task(self, list_id, task_data):
        task_id = f"cu{next(self._ids)}"
        self.created.append((list_id, task_data, task_id))
        if self.before_create_return:
            self.before_create_return(task_id)
        return task_id

    def update_task_field(self, task_id, property_name, value):
        self.updates.append((task_id, property_name, value))
        return {}

    def set_custom_field(self, task_id, field_id, value):
        self.custom_fields.append((task_id, field_id, value))

    def find_space_by_company_name(self, company_name):
        return self.spaces.get(company_name.lower())

    def find_list_in_space(self, space_id, keyword):
        return self.lists.get(space_id)

    def resolve_directory_id_by_email(self, email):
        return self.members.get(email)


@pytest.fixture
def registry(tmp_path):
    reg = SyncRegistry(path=str(tmp_path / "sync.db"))
    yield reg
    reg.close()


@pytest.fixture
def hubspot():
    return FakeHubSpot()


@pytest.fixture
def clickup():
    return FakeClickUp()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def guard():
    return InFlightGuard()


@pytest.fixture
def mapper(hubspot, clickup):
    return FieldMapper(source_directory=hubspot, target_directory=clickup)
