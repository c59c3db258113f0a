"""Order store access for the RIS MySQL database."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import mysql.connector
from mysql.connector import pooling

from .errors import OrderNotFoundError
from .models import (
    Modality,
    Order,
    OrderDetail,
    OrderFilter,
    Patient,
    Practitioner,
    ProcedureCode,
)


logger = logging.getLogger("mwl_sync.ris")


class OrderStore(ABC):
    """Where orders come from and where correlation keys are written back."""

    @abstractmethod
    def select_orders(self, order_filter: OrderFilter) -> List[Order]:
        """Orders matching the filter, most recently scheduled first."""

    @abstractmethod
    def get_order_detail(self, order_id: str) -> OrderDetail:
        """The order joined with patient, practitioners, modality and procedure.

        Raises:
            OrderNotFoundError: If the order does not exist
        """

    @abstractmethod
    def get_study_id(self, order_id: str) -> Optional[str]:
        """Current study id of the order, read fresh from the store."""

    @abstractmethod
    def set_study_id(self, order_id: str, study_id: str) -> None:
        """Persist the external study id of the order."""

    @abstractmethod
    def ping(self) -> Dict[str, Any]:
        """Verify connectivity to the store."""

    def close(self) -> None:
        pass


def parse_ae_titles(value: Any) -> Tuple[str, ...]:
    """Normalize the modality AE title column.

    The column is an array in newer schemas and text in older ones; text may
    hold a JSON list, an array literal (``{CT01,CT02}``) or a comma separated
    list.
    """
    if value is None:
        return ()
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, (list, tuple)):
        titles = [str(v) for v in value]
    else:
        text = str(value).strip()
        if text.startswith("["):
            try:
                titles = [str(v) for v in json.loads(text)]
            except ValueError:
                titles = text.strip("[]").split(",")
        else:
            titles = text.strip("{}").split(",")
    return tuple(t.strip().strip('"').strip() for t in titles if t and t.strip().strip('"').strip())


@dataclass
class RisConnectionSettings:
    host: str
    port: int
    user: str
    password: str
    database: str
    pool_name: str = "ris_order_pool"
    pool_size: int = 5


ORDER_COLUMNS = """
    d.id AS order_id,
    d.order_number,
    d.accession_number,
    d.order_status,
    d.study_id,
    d.cara_bayar,
    d.order_priority,
    d.schedule_date,
    d.ae_title,
    d.diagnosis_code,
    d.diagnosis_display,
    d.notes,
    d.created_at,
    d.updated_at,
    m.code AS modality_code
"""


class RisOrderStore(OrderStore):
    """Order store backed by the RIS ``tb_*`` tables through a connection pool."""

    def __init__(self, config: RisConnectionSettings) -> None:
        self.config = config
        logger.info(
            "Initializing RIS MySQL pool at %s:%s/%s",
            config.host,
            config.port,
            config.database,
        )
        self._pool = pooling.MySQLConnectionPool(
            pool_name=config.pool_name,
            pool_size=config.pool_size,
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            database=config.database,
            autocommit=True,
            charset="utf8mb4",
            use_pure=True,
        )

    @classmethod
    def from_config(cls, config) -> "RisOrderStore":
        return cls(
            RisConnectionSettings(
                host=config.host,
                port=config.port,
                user=config.user,
                password=config.password,
                database=config.database,
                pool_size=config.pool_size,
            )
        )

    @contextmanager
    def _get_connection(self):
        conn = self._pool.get_connection()
        try:
            yield conn
        finally:
            conn.close()

    def _fetch(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            cursor = conn.cursor(dictionary=True)
            cursor.execute(sql, params)
            rows = cursor.fetchall()
            cursor.close()
        return rows

    def ping(self) -> Dict[str, Any]:
        with self._get_connection() as conn:
            cursor = conn.cursor(dictionary=True)
            cursor.execute("SELECT 1 AS alive")
            result = cursor.fetchone()
            cursor.close()
            return {
                "success": True,
                "message": "RIS database connection successful",
                "result": result,
            }

    @staticmethod
    def _order_from_row(row: Dict[str, Any]) -> Order:
        return Order(
            order_id=str(row["order_id"]),
            order_number=row.get("order_number"),
            accession_number=row.get("accession_number"),
            status=row.get("order_status") or "IN_REQUEST",
            study_id=row.get("study_id"),
            modality_code=row.get("modality_code"),
            payer_type=row.get("cara_bayar"),
            priority=row.get("order_priority") or "ROUTINE",
            schedule_date=row.get("schedule_date"),
            ae_title=row.get("ae_title"),
            diagnosis_code=row.get("diagnosis_code"),
            diagnosis_display=row.get("diagnosis_display"),
            notes=row.get("notes"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def select_orders(self, order_filter: OrderFilter) -> List[Order]:
        filters: List[str] = []
        params: List[Any] = []

        if order_filter.accession_number:
            filters.append("d.accession_number = %s")
            params.append(order_filter.accession_number)

        if order_filter.order_id:
            filters.append("d.id = %s")
            params.append(order_filter.order_id)

        if order_filter.statuses:
            placeholders = ", ".join(["%s"] * len(order_filter.statuses))
            filters.append(f"d.order_status IN ({placeholders})")
            params.extend(order_filter.statuses)

        if order_filter.from_date:
            filters.append("d.schedule_date >= %s")
            params.append(order_filter.from_date)

        if order_filter.to_date:
            # Inclusive of the whole end day
            filters.append("d.schedule_date < DATE_ADD(%s, INTERVAL 1 DAY)")
            params.append(order_filter.to_date)

        where_clause = " WHERE " + " AND ".join(filters) if filters else ""

        sql = f"""
            SELECT {ORDER_COLUMNS}
            FROM tb_detail_order d
            LEFT JOIN tb_modality m ON d.id_modality = m.id
            {where_clause}
            ORDER BY d.schedule_date DESC
            LIMIT %s
        """
        params.append(max(1, order_filter.limit))

        rows = self._fetch(sql, params)
        logger.info("Selected %d orders from RIS", len(rows))
        return [self._order_from_row(row) for row in rows]

    def _practitioners(self, ids: List[str]) -> Dict[str, Dict[str, Any]]:
        ids = [i for i in ids if i]
        if not ids:
            return {}
        placeholders = ", ".join(["%s"] * len(ids))
        rows = self._fetch(
            f"SELECT id, name, profession FROM tb_practitioner WHERE id IN ({placeholders})",
            ids,
        )
        return {str(row["id"]): row for row in rows}

    def get_order_detail(self, order_id: str) -> OrderDetail:
        sql = f"""
            SELECT
                {ORDER_COLUMNS},
                d.id_requester,
                d.id_performer,
                COALESCE(p.id, o.id_patient) AS patient_id,
                COALESCE(p.name, o.patient_name) AS patient_name,
                COALESCE(p.mrn, o.patient_mrn) AS patient_mrn,
                COALESCE(p.birth_date, o.patient_birth_date) AS patient_birth_date,
                COALESCE(p.gender, o.patient_gender) AS patient_gender,
                p.address AS patient_address,
                p.phone AS patient_phone,
                m.name AS modality_name,
                m.aet AS modality_aet,
                l.loinc_code,
                l.loinc_display
            FROM tb_detail_order d
            LEFT JOIN tb_order o ON d.id_order = o.id
            LEFT JOIN tb_patient p ON o.id_patient = p.id
            LEFT JOIN tb_modality m ON d.id_modality = m.id
            LEFT JOIN tb_loinc l ON d.id_loinc = l.id
            WHERE d.id = %s
        """
        rows = self._fetch(sql, [order_id])
        if not rows:
            raise OrderNotFoundError(f"Order {order_id} not found")
        row = rows[0]

        practitioners = self._practitioners([row.get("id_requester"), row.get("id_performer")])

        def practitioner(key: str, role: str) -> Optional[Practitioner]:
            found = practitioners.get(str(row.get(key))) if row.get(key) else None
            if not found or not found.get("name"):
                return None
            return Practitioner(practitioner_id=str(found["id"]), name=found["name"], role=role)

        procedure = None
        if row.get("loinc_code"):
            procedure = ProcedureCode(code=row["loinc_code"], display=row.get("loinc_display"))

        return OrderDetail(
            order=self._order_from_row(row),
            patient=Patient(
                patient_id=str(row.get("patient_id") or order_id),
                mrn=row.get("patient_mrn"),
                name=row.get("patient_name"),
                birth_date=row.get("patient_birth_date"),
                sex=row.get("patient_gender"),
                address=row.get("patient_address"),
                phone=row.get("patient_phone"),
            ),
            modality=Modality(
                code=row.get("modality_code") or "",
                name=row.get("modality_name"),
                ae_titles=parse_ae_titles(row.get("modality_aet")),
            ),
            requester=practitioner("id_requester", "requester"),
            performer=practitioner("id_performer", "performer"),
            procedure=procedure,
        )

    def get_study_id(self, order_id: str) -> Optional[str]:
        rows = self._fetch("SELECT study_id FROM tb_detail_order WHERE id = %s", [order_id])
        if not rows:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return rows[0].get("study_id")

    def set_study_id(self, order_id: str, study_id: str) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(
                    "UPDATE tb_detail_order SET study_id = %s, updated_at = NOW() WHERE id = %s",
                    (study_id, order_id),
                )
                if cursor.rowcount == 0:
                    raise OrderNotFoundError(f"Order {order_id} not found")
            except mysql.connector.Error as exc:
                logger.error("Failed to write study id for order %s: %s", order_id, exc)
                raise
            finally:
                cursor.close()
        logger.info("Order %s correlated with study %s", order_id, study_id)
