from decimal import Decimal

import pytest

from backend.errores import NoEncontradoError, ValidacionError
from backend.utils.montos import calcular_monto
from backend.utils.tarifas import (
    JerarquiaTarifa,
    actualizar_facturabilidad,
    resolver_tarifa,
    resolver_tarifa_para_tarea,
)


def foto(**kwargs):
    datos = dict(task_billable=True, project_billable=True, client_billable=True)
    datos.update(kwargs)
    return JerarquiaTarifa(**datos)


def test_tarea_en_cero_hereda_del_proyecto():
    resuelta = resolver_tarifa(foto(task_rate=Decimal("0"), project_rate=Decimal("50"), client_default_rate=Decimal("80")))
    assert resuelta.billable is True
    assert resuelta.rate == Decimal("50")


def test_tarifa_de_tarea_tiene_prioridad():
    resuelta = resolver_tarifa(foto(task_rate=Decimal("120"), project_rate=Decimal("50"), client_default_rate=Decimal("80")))
    assert resuelta.rate == Decimal("120")


def test_sin_tarifas_cae_en_el_cliente_y_luego_en_cero():
    assert resolver_tarifa(foto(client_default_rate=Decimal("80"))).rate == Decimal("80")
    assert resolver_tarifa(foto()).rate == Decimal("0")


def test_cliente_no_facturable_anula_la_tarifa_de_la_tarea():
    resuelta = resolver_tarifa(foto(client_billable=False, task_rate=Decimal("100")))
    assert resuelta.billable is False
    assert resuelta.rate == Decimal("0")
    assert calcular_monto(resuelta.billable, 600, resuelta.rate) == Decimal("0.00")


@pytest.mark.parametrize("nivel", ["task_billable", "project_billable", "client_billable"])
def test_facturabilidad_es_and_de_los_tres_niveles(nivel):
    resuelta = resolver_tarifa(foto(**{nivel: False}, task_rate=Decimal("10")))
    assert resuelta == resolver_tarifa(foto(**{nivel: False}))
    assert resuelta.billable is False


def test_resolver_desde_la_base(session, jerarquia):
    resuelta = resolver_tarifa_para_tarea(session, jerarquia.task.id)
    assert resuelta.billable is True
    assert resuelta.rate == Decimal("50")


def test_resolver_tarea_inexistente(session, jerarquia):
    with pytest.raises(NoEncontradoError):
        resolver_tarifa_para_tarea(session, 9999)


def test_no_se_habilita_una_tarea_bajo_cliente_no_facturable(session, jerarquia):
    actualizar_facturabilidad(session, jerarquia.client.owner_id, "client", jerarquia.client.id, False)
    with pytest.raises(ValidacionError):
        actualizar_facturabilidad(session, jerarquia.client.owner_id, "task", jerarquia.task.id, True)
    with pytest.raises(ValidacionError):
        actualizar_facturabilidad(session, jerarquia.client.owner_id, "project", jerarquia.project.id, True)


def test_deshabilitar_proyecto_se_refleja_en_la_resolucion(session, jerarquia):
    actualizar_facturabilidad(session, jerarquia.client.owner_id, "project", jerarquia.project.id, False)
    resuelta = resolver_tarifa_para_tarea(session, jerarquia.task.id)
    assert resuelta.billable is False
    assert resuelta.rate == Decimal("0")


def test_facturabilidad_de_otro_usuario_no_se_encuentra(session, jerarquia):
    with pytest.raises(NoEncontradoError):
        actualizar_facturabilidad(session, 999, "task", jerarquia.task.id, False)


def test_nivel_invalido(session, jerarquia):
    with pytest.raises(ValidacionError):
        actualizar_facturabilidad(session, jerarquia.client.owner_id, "workspace", 1, False)
