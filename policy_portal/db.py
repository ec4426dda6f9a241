"""
Database abstraction for the hosted Postgres tables and an in-memory test implementation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    String,
    create_engine,
    func,
    or_,
    select,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

ROLE_ADMIN = "admin"
ROLE_CLIENT = "client"

STATUS_RENEWED = "Renovada"
STATUS_PENDING = "Pendiente"

CLIENT_FIELDS = ("name", "email", "phone", "document", "address", "client_number")
POLICY_FIELDS = (
    "client_id",
    "company_id",
    "policy_number",
    "type",
    "start_date",
    "end_date",
    "status",
    "notes",
    "insured_name",
    "insured_document",
    "relationship",
    "file_urls",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ClientRecord:
    id: str
    name: str
    email: Optional[str]
    document: Optional[str]
    phone: Optional[str] = None
    address: Optional[str] = None
    client_number: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "document": self.document,
            "phone": self.phone,
            "address": self.address,
            "client_number": self.client_number,
            "created_at": self.created_at,
        }


@dataclass
class AccessProfile:
    """Binds one auth account (``id``) to at most one client and a role."""

    id: str
    client_id: Optional[str]
    role: str = ROLE_CLIENT
    first_login: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class CompanyRecord:
    id: str
    name: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class PolicyRecord:
    id: str
    client_id: str
    policy_number: str
    type: str
    start_date: date
    end_date: date
    company_id: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    insured_name: Optional[str] = None
    insured_document: Optional[str] = None
    relationship: Optional[str] = None
    file_urls: list[str] = field(default_factory=list)
    file_url: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def document_urls(self) -> list[str]:
        """Every stored document URL, including the legacy single-file column."""
        urls = list(self.file_urls or [])
        if self.file_url:
            urls.append(self.file_url)
        return list(dict.fromkeys(urls))

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "company_id": self.company_id,
            "policy_number": self.policy_number,
            "type": self.type,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "status": self.status,
            "notes": self.notes,
            "insured_name": self.insured_name,
            "insured_document": self.insured_document,
            "relationship": self.relationship,
            "file_urls": self.document_urls(),
            "created_at": self.created_at,
        }


@dataclass
class PolicyFilter:
    client_id: Optional[str] = None
    company_id: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    exclude_status: Optional[str] = None
    end_from: Optional[date] = None
    end_to: Optional[date] = None
    end_before: Optional[date] = None
    newest_first: bool = False

    def matches(self, policy: PolicyRecord) -> bool:
        if self.client_id is not None and policy.client_id != self.client_id:
            return False
        if self.company_id is not None and policy.company_id != self.company_id:
            return False
        if self.type is not None and policy.type != self.type:
            return False
        if self.status is not None and policy.status != self.status:
            return False
        if self.exclude_status is not None and policy.status == self.exclude_status:
            return False
        if self.end_from is not None and policy.end_date < self.end_from:
            return False
        if self.end_to is not None and policy.end_date > self.end_to:
            return False
        if self.end_before is not None and policy.end_date >= self.end_before:
            return False
        return True


class DbClient(Protocol):
    """Interface for database access."""

    def list_clients(self) -> list[ClientRecord]:
        """All clients, oldest first, in a stable order across calls."""
        ...

    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        ...

    def find_client(
        self, field_name: str, value, exclude_id: Optional[str] = None
    ) -> Optional[ClientRecord]:
        ...

    def create_client(
        self,
        *,
        name: str,
        email: Optional[str],
        document: Optional[str],
        phone: Optional[str] = None,
        address: Optional[str] = None,
        client_number: Optional[int] = None,
    ) -> ClientRecord:
        ...

    def update_client(self, client_id: str, changes: dict) -> Optional[ClientRecord]:
        ...

    def delete_client(self, client_id: str) -> None:
        ...

    def list_profiles(self) -> list[AccessProfile]:
        ...

    def get_profile(self, user_id: str) -> Optional[AccessProfile]:
        ...

    def get_profile_for_client(self, client_id: str) -> Optional[AccessProfile]:
        ...

    def insert_profile(self, profile: AccessProfile) -> None:
        ...

    def update_profile(self, user_id: str, changes: dict) -> None:
        ...

    def delete_profile(self, user_id: str) -> None:
        ...

    def list_companies(self) -> list[CompanyRecord]:
        ...

    def create_company(self, name: str) -> CompanyRecord:
        ...

    def list_policies(self, flt: Optional[PolicyFilter] = None) -> list[PolicyRecord]:
        ...

    def count_policies(self, flt: Optional[PolicyFilter] = None) -> int:
        ...

    def get_policy(self, policy_id: str) -> Optional[PolicyRecord]:
        ...

    def create_policy(self, data: dict) -> PolicyRecord:
        ...

    def update_policy(self, policy_id: str, changes: dict) -> Optional[PolicyRecord]:
        ...

    def set_policy_status(self, policy_ids: Iterable[str], status: str) -> int:
        ...

    def delete_policies_for_client(self, client_id: str) -> int:
        ...


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.clients: Dict[str, ClientRecord] = {}
        self.profiles: Dict[str, AccessProfile] = {}
        self.companies: Dict[str, CompanyRecord] = {}
        self.policies: Dict[str, PolicyRecord] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.clients.clear()
        self.profiles.clear()
        self.companies.clear()
        self.policies.clear()

    def list_clients(self) -> list[ClientRecord]:
        return sorted(self.clients.values(), key=lambda c: (c.created_at, c.id))

    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        return self.clients.get(client_id)

    def find_client(
        self, field_name: str, value, exclude_id: Optional[str] = None
    ) -> Optional[ClientRecord]:
        for client in self.list_clients():
            if client.id != exclude_id and getattr(client, field_name) == value:
                return client
        return None

    def create_client(
        self,
        *,
        name: str,
        email: Optional[str],
        document: Optional[str],
        phone: Optional[str] = None,
        address: Optional[str] = None,
        client_number: Optional[int] = None,
    ) -> ClientRecord:
        record = ClientRecord(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            document=document,
            phone=phone,
            address=address,
            client_number=client_number,
        )
        self.clients[record.id] = record
        return record

    def update_client(self, client_id: str, changes: dict) -> Optional[ClientRecord]:
        client = self.clients.get(client_id)
        if not client:
            return None
        updated = replace(client, **{k: v for k, v in changes.items() if k in CLIENT_FIELDS})
        self.clients[client_id] = updated
        return updated

    def delete_client(self, client_id: str) -> None:
        self.clients.pop(client_id, None)

    def list_profiles(self) -> list[AccessProfile]:
        return list(self.profiles.values())

    def get_profile(self, user_id: str) -> Optional[AccessProfile]:
        return self.profiles.get(user_id)

    def get_profile_for_client(self, client_id: str) -> Optional[AccessProfile]:
        for profile in self.profiles.values():
            if profile.client_id == client_id:
                return profile
        return None

    def insert_profile(self, profile: AccessProfile) -> None:
        if profile.id in self.profiles:
            raise ValueError(
                f'duplicate key value violates unique constraint "user_profiles_pkey" ({profile.id})'
            )
        if profile.client_id and self.get_profile_for_client(profile.client_id):
            raise ValueError(
                f'duplicate key value violates unique constraint "user_profiles_client_id_key" ({profile.client_id})'
            )
        self.profiles[profile.id] = profile

    def update_profile(self, user_id: str, changes: dict) -> None:
        profile = self.profiles.get(user_id)
        if profile:
            self.profiles[user_id] = replace(profile, **changes)

    def delete_profile(self, user_id: str) -> None:
        self.profiles.pop(user_id, None)

    def list_companies(self) -> list[CompanyRecord]:
        return sorted(self.companies.values(), key=lambda c: c.name)

    def create_company(self, name: str) -> CompanyRecord:
        record = CompanyRecord(id=str(uuid.uuid4()), name=name)
        self.companies[record.id] = record
        return record

    def list_policies(self, flt: Optional[PolicyFilter] = None) -> list[PolicyRecord]:
        flt = flt or PolicyFilter()
        items = [p for p in self.policies.values() if flt.matches(p)]
        if flt.newest_first:
            items.sort(key=lambda p: p.created_at, reverse=True)
        else:
            items.sort(key=lambda p: p.end_date)
        return items

    def count_policies(self, flt: Optional[PolicyFilter] = None) -> int:
        return len(self.list_policies(flt))

    def get_policy(self, policy_id: str) -> Optional[PolicyRecord]:
        return self.policies.get(policy_id)

    def create_policy(self, data: dict) -> PolicyRecord:
        values = {k: v for k, v in data.items() if k in POLICY_FIELDS}
        values["file_urls"] = list(values.get("file_urls") or [])
        record = PolicyRecord(id=str(uuid.uuid4()), **values)
        self.policies[record.id] = record
        return record

    def update_policy(self, policy_id: str, changes: dict) -> Optional[PolicyRecord]:
        policy = self.policies.get(policy_id)
        if not policy:
            return None
        updated = replace(policy, **{k: v for k, v in changes.items() if k in POLICY_FIELDS})
        self.policies[policy_id] = updated
        return updated

    def set_policy_status(self, policy_ids: Iterable[str], status: str) -> int:
        updated = 0
        for policy_id in policy_ids:
            policy = self.policies.get(policy_id)
            if policy:
                policy.status = status
                updated += 1
        return updated

    def delete_policies_for_client(self, client_id: str) -> int:
        doomed = [pid for pid, p in self.policies.items() if p.client_id == client_id]
        for policy_id in doomed:
            del self.policies[policy_id]
        return len(doomed)


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation over the hosted project's tables.
    Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_client_record(self, row: "ClientRow") -> ClientRecord:
        return ClientRecord(
            id=row.id,
            name=row.name,
            email=row.email,
            document=row.document,
            phone=row.phone,
            address=row.address,
            client_number=row.client_number,
            created_at=row.created_at,
        )

    def _to_profile(self, row: "UserProfileRow") -> AccessProfile:
        return AccessProfile(
            id=row.id,
            client_id=row.client_id,
            role=row.role,
            first_login=bool(row.first_login),
            created_at=row.created_at,
        )

    def _to_policy_record(self, row: "PolicyRow") -> PolicyRecord:
        return PolicyRecord(
            id=row.id,
            client_id=row.client_id,
            company_id=row.company_id,
            policy_number=row.policy_number,
            type=row.type,
            start_date=row.start_date,
            end_date=row.end_date,
            status=row.status,
            notes=row.notes,
            insured_name=row.insured_name,
            insured_document=row.insured_document,
            relationship=row.relationship,
            file_urls=list(row.file_urls or []),
            file_url=row.file_url,
            created_at=row.created_at,
        )

    def list_clients(self) -> list[ClientRecord]:
        with self.Session() as session:
            stmt = select(ClientRow).order_by(ClientRow.created_at.asc(), ClientRow.id.asc())
            return [self._to_client_record(row) for row in session.execute(stmt).scalars()]

    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        with self.Session() as session:
            row = session.get(ClientRow, client_id)
            return self._to_client_record(row) if row else None

    def find_client(
        self, field_name: str, value, exclude_id: Optional[str] = None
    ) -> Optional[ClientRecord]:
        if field_name not in CLIENT_FIELDS:
            raise ValueError(f"Unknown client field: {field_name}")
        with self.Session() as session:
            stmt = select(ClientRow).where(getattr(ClientRow, field_name) == value)
            if exclude_id:
                stmt = stmt.where(ClientRow.id != exclude_id)
            row = session.execute(stmt.limit(1)).scalar_one_or_none()
            return self._to_client_record(row) if row else None

    def create_client(
        self,
        *,
        name: str,
        email: Optional[str],
        document: Optional[str],
        phone: Optional[str] = None,
        address: Optional[str] = None,
        client_number: Optional[int] = None,
    ) -> ClientRecord:
        with self.Session() as session:
            row = ClientRow(
                id=str(uuid.uuid4()),
                name=name,
                email=email,
                document=document,
                phone=phone,
                address=address,
                client_number=client_number,
                created_at=_utcnow(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_client_record(row)

    def update_client(self, client_id: str, changes: dict) -> Optional[ClientRecord]:
        with self.Session() as session:
            row = session.get(ClientRow, client_id)
            if not row:
                return None
            for key, value in changes.items():
                if key in CLIENT_FIELDS:
                    setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return self._to_client_record(row)

    def delete_client(self, client_id: str) -> None:
        with self.Session() as session:
            row = session.get(ClientRow, client_id)
            if row:
                session.delete(row)
                session.commit()

    def list_profiles(self) -> list[AccessProfile]:
        with self.Session() as session:
            rows = session.execute(select(UserProfileRow)).scalars()
            return [self._to_profile(row) for row in rows]

    def get_profile(self, user_id: str) -> Optional[AccessProfile]:
        with self.Session() as session:
            row = session.get(UserProfileRow, user_id)
            return self._to_profile(row) if row else None

    def get_profile_for_client(self, client_id: str) -> Optional[AccessProfile]:
        with self.Session() as session:
            stmt = select(UserProfileRow).where(UserProfileRow.client_id == client_id)
            row = session.execute(stmt.limit(1)).scalar_one_or_none()
            return self._to_profile(row) if row else None

    def insert_profile(self, profile: AccessProfile) -> None:
        with self.Session() as session:
            session.add(
                UserProfileRow(
                    id=profile.id,
                    client_id=profile.client_id,
                    role=profile.role,
                    first_login=profile.first_login,
                    created_at=profile.created_at,
                )
            )
            session.commit()

    def update_profile(self, user_id: str, changes: dict) -> None:
        with self.Session() as session:
            row = session.get(UserProfileRow, user_id)
            if not row:
                return
            for key, value in changes.items():
                setattr(row, key, value)
            session.commit()

    def delete_profile(self, user_id: str) -> None:
        with self.Session() as session:
            row = session.get(UserProfileRow, user_id)
            if row:
                session.delete(row)
                session.commit()

    def list_companies(self) -> list[CompanyRecord]:
        with self.Session() as session:
            rows = session.execute(select(CompanyRow).order_by(CompanyRow.name.asc())).scalars()
            return [CompanyRecord(id=r.id, name=r.name, created_at=r.created_at) for r in rows]

    def create_company(self, name: str) -> CompanyRecord:
        with self.Session() as session:
            row = CompanyRow(id=str(uuid.uuid4()), name=name, created_at=_utcnow())
            session.add(row)
            session.commit()
            return CompanyRecord(id=row.id, name=row.name, created_at=row.created_at)

    def _policy_conditions(self, flt: PolicyFilter) -> list:
        conditions = []
        if flt.client_id is not None:
            conditions.append(PolicyRow.client_id == flt.client_id)
        if flt.company_id is not None:
            conditions.append(PolicyRow.company_id == flt.company_id)
        if flt.type is not None:
            conditions.append(PolicyRow.type == flt.type)
        if flt.status is not None:
            conditions.append(PolicyRow.status == flt.status)
        if flt.exclude_status is not None:
            conditions.append(
                or_(PolicyRow.status.is_(None), PolicyRow.status != flt.exclude_status)
            )
        if flt.end_from is not None:
            conditions.append(PolicyRow.end_date >= flt.end_from)
        if flt.end_to is not None:
            conditions.append(PolicyRow.end_date <= flt.end_to)
        if flt.end_before is not None:
            conditions.append(PolicyRow.end_date < flt.end_before)
        return conditions

    def list_policies(self, flt: Optional[PolicyFilter] = None) -> list[PolicyRecord]:
        flt = flt or PolicyFilter()
        order = PolicyRow.created_at.desc() if flt.newest_first else PolicyRow.end_date.asc()
        with self.Session() as session:
            stmt = select(PolicyRow).where(*self._policy_conditions(flt)).order_by(order)
            return [self._to_policy_record(row) for row in session.execute(stmt).scalars()]

    def count_policies(self, flt: Optional[PolicyFilter] = None) -> int:
        flt = flt or PolicyFilter()
        with self.Session() as session:
            stmt = select(func.count()).select_from(PolicyRow).where(
                *self._policy_conditions(flt)
            )
            return session.execute(stmt).scalar_one()

    def get_policy(self, policy_id: str) -> Optional[PolicyRecord]:
        with self.Session() as session:
            row = session.get(PolicyRow, policy_id)
            return self._to_policy_record(row) if row else None

    def create_policy(self, data: dict) -> PolicyRecord:
        values = {k: v for k, v in data.items() if k in POLICY_FIELDS}
        values["file_urls"] = list(values.get("file_urls") or [])
        with self.Session() as session:
            row = PolicyRow(id=str(uuid.uuid4()), created_at=_utcnow(), **values)
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_policy_record(row)

    def update_policy(self, policy_id: str, changes: dict) -> Optional[PolicyRecord]:
        with self.Session() as session:
            row = session.get(PolicyRow, policy_id)
            if not row:
                return None
            for key, value in changes.items():
                if key in POLICY_FIELDS:
                    setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return self._to_policy_record(row)

    def set_policy_status(self, policy_ids: Iterable[str], status: str) -> int:
        ids = list(policy_ids)
        if not ids:
            return 0
        with self.Session() as session:
            updated = (
                session.query(PolicyRow)
                .filter(PolicyRow.id.in_(ids))
                .update({PolicyRow.status: status}, synchronize_session=False)
            )
            session.commit()
            return updated or 0

    def delete_policies_for_client(self, client_id: str) -> int:
        with self.Session() as session:
            deleted = (
                session.query(PolicyRow)
                .filter(PolicyRow.client_id == client_id)
                .delete(synchronize_session=False)
            )
            session.commit()
            return deleted or 0


Base = declarative_base()


class ClientRow(Base):
    __tablename__ = "clients"

    id = Column(String, primary_key=True)
    name = Column("nombre", String, nullable=False)
    email = Column(String, nullable=True, index=True)
    phone = Column("telefono", String, nullable=True)
    document = Column("documento", String, nullable=True, index=True)
    address = Column("direccion", String, nullable=True)
    client_number = Column("numero_cliente", Integer, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class UserProfileRow(Base):
    __tablename__ = "user_profiles"

    id = Column(String, primary_key=True)
    client_id = Column(String, nullable=True, unique=True)
    role = Column(String, nullable=False, default=ROLE_CLIENT)
    first_login = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class CompanyRow(Base):
    __tablename__ = "companies"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class PolicyRow(Base):
    __tablename__ = "policies"

    id = Column(String, primary_key=True)
    client_id = Column(String, nullable=False, index=True)
    company_id = Column(String, nullable=True, index=True)
    policy_number = Column("numero_poliza", String, nullable=False)
    type = Column("tipo", String, nullable=False)
    start_date = Column("vigencia_inicio", Date, nullable=False)
    end_date = Column("vigencia_fin", Date, nullable=False, index=True)
    status = Column(String, nullable=True, index=True)
    notes = Column("notas", String, nullable=True)
    insured_name = Column("nombre_asegurado", String, nullable=True)
    insured_document = Column("documento_asegurado", String, nullable=True)
    relationship = Column("parentesco", String, nullable=True)
    file_url = Column("archivo_url", String, nullable=True)
    file_urls = Column("archivo_urls", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
