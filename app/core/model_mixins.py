"""
Model mixins providing reusable functionality for Django models.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    VersionedMixin: Optimistic version counter bumped on every update

Usage:
    from core.models import BaseModel
    from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

    class Subscription(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
        provider_subscription_id = models.CharField(max_length=64, unique=True)

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are abstract and don't create database tables
"""

from __future__ import annotations

import uuid

from django.db import models
from django.db.models import F


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    The id can be generated before the row is inserted, which lets a
    caller hand it to an external system (e.g. as a gateway custom_id)
    and persist the row afterwards.

    Fields:
        id: UUIDField as primary key (auto-generated)
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier (UUID v4)",
    )

    class Meta:
        abstract = True


class VersionedMixin(models.Model):
    """
    Optimistic concurrency counter.

    On update (not force_insert) the version is incremented atomically
    in SQL and read back, so two writers that loaded the same version
    can detect each other with a filtered update.

    Fields:
        version: Incremented on every save of an existing row
    """

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        is_update = (
            not self._state.adding
            and self.pk is not None
            and not kwargs.get("force_insert", False)
        )
        update_fields = kwargs.get("update_fields")
        if is_update:
            self.version = F("version") + 1
            if update_fields is not None:
                kwargs["update_fields"] = {*update_fields, "version"}
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])
