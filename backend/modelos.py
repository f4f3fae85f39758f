#/backend/modelos.py

from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from sqlmodel import Field, Relationship, SQLModel, Column
from sqlalchemy import DECIMAL, Date, DateTime, Integer, Text, UniqueConstraint


def ahora() -> datetime:
    """Instante actual en UTC, sin tzinfo (así se persiste en todas las bases)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def a_utc(valor: Optional[datetime]) -> Optional[datetime]:
    """Normaliza un datetime con zona horaria a UTC naive; los naive se asumen UTC."""
    if valor is None or valor.tzinfo is None:
        return valor
    return valor.astimezone(timezone.utc).replace(tzinfo=None)


class EstadoFactura(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class TipoFacturacion(str, Enum):
    LEGAL = "LEGAL"
    INTERNAL = "INTERNAL"


class EstrategiaMoneda(str, Enum):
    CURRENT = "CURRENT"
    HISTORICAL = "HISTORICAL"


# ===================================================================
# === JERARQUÍA CLIENTE -> PROYECTO -> TAREA
# ===================================================================

class Client(SQLModel, table=True):
    __tablename__ = "clients"
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    name: str = Field(index=True)
    tax_id: Optional[str] = Field(default=None, max_length=20, description="CUIT del receptor")
    currency: str = Field(default="USD", max_length=3, description="Moneda nativa de las tarifas")
    is_billable: bool = Field(default=True)
    default_rate: Optional[Decimal] = Field(default=None, sa_column=Column(DECIMAL(12, 2)))
    created_at: datetime = Field(default_factory=ahora, sa_column=Column(DateTime, nullable=False))

    projects: List["Project"] = Relationship(back_populates="client")
    invoices: List["Invoice"] = Relationship(back_populates="client")


class Project(SQLModel, table=True):
    __tablename__ = "projects"
    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="clients.id", index=True)
    name: str
    is_billable: bool = Field(default=True)
    rate: Optional[Decimal] = Field(default=None, sa_column=Column(DECIMAL(12, 2)))

    client: Client = Relationship(back_populates="projects")
    tasks: List["Task"] = Relationship(back_populates="project")


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(foreign_key="projects.id", index=True)
    name: str
    is_billable: bool = Field(default=True)
    rate: Optional[Decimal] = Field(default=None, sa_column=Column(DECIMAL(12, 2)))

    project: Project = Relationship(back_populates="tasks")
    time_entries: List["TimeEntry"] = Relationship(back_populates="task")


# ===================================================================
# === REGISTROS DE TIEMPO Y PAUSAS
# ===================================================================

class TimeEntry(SQLModel, table=True):
    __tablename__ = "time_entries"

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    task_id: int = Field(foreign_key="tasks.id", index=True)
    start_time: datetime = Field(sa_column=Column(DateTime, nullable=False, index=True))
    end_time: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    description: Optional[str] = Field(default=None, sa_column=Column(Text))

    # Espejo de owner_id mientras el registro está abierto; NULL al cerrarse.
    # La restricción UNIQUE garantiza un único timer activo por usuario.
    active_owner_id: Optional[int] = Field(default=None, sa_column=Column("active_owner_id", Integer, unique=True, nullable=True))

    duration_total: int = Field(default=0, description="Minutos brutos")
    duration_neto: int = Field(default=0, description="Minutos netos (sin pausas cerradas)")
    billable: bool = Field(default=True)
    rate_applied: Optional[Decimal] = Field(default=None, sa_column=Column(DECIMAL(12, 2)))
    amount: Decimal = Field(default=Decimal("0"), sa_column=Column(DECIMAL(14, 2), nullable=False, default=0))
    usd_exchange_rate: Optional[Decimal] = Field(default=None, sa_column=Column(DECIMAL(14, 4)))
    is_billed: bool = Field(default=False, index=True)
    invoice_id: Optional[int] = Field(default=None, foreign_key="invoices.id")

    created_at: datetime = Field(default_factory=ahora, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=ahora, sa_column=Column(DateTime, nullable=False))

    task: Task = Relationship(back_populates="time_entries")
    breaks: List["TimeEntryBreak"] = Relationship(
        back_populates="time_entry",
        sa_relationship_kwargs={"order_by": "TimeEntryBreak.start_time", "cascade": "all, delete-orphan"},
    )
    invoice_items: List["InvoiceItem"] = Relationship(back_populates="time_entry")


class TimeEntryBreak(SQLModel, table=True):
    __tablename__ = "time_entry_breaks"

    id: Optional[int] = Field(default=None, primary_key=True)
    time_entry_id: int = Field(foreign_key="time_entries.id", index=True)
    start_time: datetime = Field(sa_column=Column(DateTime, nullable=False))
    end_time: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    # Igual que active_owner_id: una sola pausa abierta por registro.
    active_entry_id: Optional[int] = Field(default=None, sa_column=Column("active_entry_id", Integer, unique=True, nullable=True))

    time_entry: TimeEntry = Relationship(back_populates="breaks")


# ===================================================================
# === FACTURAS, ITEMS Y PAGOS
# ===================================================================

class Invoice(SQLModel, table=True):
    __tablename__ = "invoices"
    __table_args__ = (UniqueConstraint("billing_type", "invoice_number", name="uq_invoice_number_billing_type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="clients.id", index=True)
    invoice_number: str = Field(max_length=32, index=True)
    status: str = Field(default=EstadoFactura.DRAFT.value, max_length=16)
    billing_type: str = Field(default=TipoFacturacion.LEGAL.value, max_length=16)
    currency: str = Field(default="USD", max_length=3)
    currency_strategy: Optional[str] = Field(default=None, max_length=16)
    exchange_rate: Optional[Decimal] = Field(default=None, sa_column=Column(DECIMAL(14, 4)))

    subtotal: Decimal = Field(default=Decimal("0"), sa_column=Column(DECIMAL(15, 2), nullable=False, default=0))
    tax_rate: Decimal = Field(default=Decimal("0"), sa_column=Column(DECIMAL(5, 2), nullable=False, default=0))
    tax_amount: Decimal = Field(default=Decimal("0"), sa_column=Column(DECIMAL(15, 2), nullable=False, default=0))
    total_amount: Decimal = Field(default=Decimal("0"), sa_column=Column(DECIMAL(15, 2), nullable=False, default=0))

    issue_date: date = Field(default_factory=lambda: ahora().date(), sa_column=Column(Date, nullable=False))
    due_date: Optional[date] = Field(default=None, sa_column=Column(Date))
    notes: Optional[str] = Field(default=None, sa_column=Column(Text))
    paid_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))

    # --- Campos fiscales (AFIP) ---
    cae: Optional[str] = Field(default=None, max_length=14, description="Código de Autorización Electrónico.")
    cae_due_date: Optional[date] = Field(default=None, sa_column=Column(Date))
    cbte_nro: Optional[int] = Field(default=None, description="Número de comprobante fiscal.")
    punto_venta: Optional[int] = Field(default=None)
    cbte_tipo: Optional[int] = Field(default=None, description="Tipo de comprobante (1=A, 6=B, 11=C).")
    issuer_tax_id: Optional[str] = Field(default=None, max_length=11)
    afip_error: Optional[str] = Field(default=None, sa_column=Column(Text))
    # Solo notas de crédito: factura que anulan
    reversal_of_invoice_id: Optional[int] = Field(default=None, foreign_key="invoices.id")

    created_at: datetime = Field(default_factory=ahora, sa_column=Column(DateTime, nullable=False))

    client: Client = Relationship(back_populates="invoices")
    items: List["InvoiceItem"] = Relationship(
        back_populates="invoice",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    payments: List["Payment"] = Relationship(
        back_populates="invoice",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class InvoiceItem(SQLModel, table=True):
    __tablename__ = "invoice_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="invoices.id", index=True)
    time_entry_id: Optional[int] = Field(default=None, foreign_key="time_entries.id", index=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    quantity: Decimal = Field(sa_column=Column(DECIMAL(10, 4), nullable=False), description="Horas")
    rate: Decimal = Field(sa_column=Column(DECIMAL(14, 4), nullable=False))
    amount: Decimal = Field(sa_column=Column(DECIMAL(15, 2), nullable=False))

    invoice: Invoice = Relationship(back_populates="items")
    time_entry: Optional[TimeEntry] = Relationship(back_populates="invoice_items")


class Payment(SQLModel, table=True):
    __tablename__ = "payments"

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="invoices.id", index=True)
    amount: Decimal = Field(sa_column=Column(DECIMAL(15, 2), nullable=False))
    payment_date: date = Field(sa_column=Column(Date, nullable=False))
    method: Optional[str] = Field(default=None, max_length=32)
    notes: Optional[str] = Field(default=None, sa_column=Column(Text))

    invoice: Invoice = Relationship(back_populates="payments")
