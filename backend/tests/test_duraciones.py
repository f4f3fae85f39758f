from datetime import datetime, timedelta
from types import SimpleNamespace

from backend.utils.duraciones import calcular_duraciones

BASE = datetime(2025, 3, 10, 9, 0)


def pausa(inicio, fin):
    return SimpleNamespace(start_time=inicio, end_time=fin)


def test_pausa_cerrada_descuenta_del_neto():
    bruto, neto = calcular_duraciones(
        BASE,
        BASE.replace(hour=12),
        [pausa(BASE.replace(hour=10), BASE.replace(hour=10, minute=15))],
    )
    assert (bruto, neto) == (180, 165)


def test_registro_activo_tiene_duracion_cero():
    assert calcular_duraciones(BASE, None, [pausa(BASE, BASE + timedelta(minutes=5))]) == (0, 0)


def test_pausa_abierta_no_descuenta():
    bruto, neto = calcular_duraciones(BASE, BASE + timedelta(hours=1), [pausa(BASE + timedelta(minutes=10), None)])
    assert (bruto, neto) == (60, 60)


def test_neto_nunca_negativo():
    # Pausas cargadas a mano que exceden el registro
    pausas = [pausa(BASE, BASE + timedelta(minutes=50)), pausa(BASE, BASE + timedelta(minutes=50))]
    bruto, neto = calcular_duraciones(BASE, BASE + timedelta(hours=1), pausas)
    assert bruto == 60
    assert neto == 0


def test_minutos_se_truncan():
    bruto, neto = calcular_duraciones(BASE, BASE + timedelta(minutes=10, seconds=59), [])
    assert (bruto, neto) == (10, 10)


def test_pausas_suman_segundos_antes_de_truncar():
    pausas = [
        pausa(BASE, BASE + timedelta(seconds=40)),
        pausa(BASE + timedelta(minutes=1), BASE + timedelta(minutes=1, seconds=40)),
    ]
    bruto, neto = calcular_duraciones(BASE, BASE + timedelta(minutes=30), pausas)
    assert bruto == 30
    assert neto == 29


def test_neto_menor_o_igual_al_bruto_en_varias_combinaciones():
    for minutos in (0, 1, 45, 600):
        for pausa_min in (0, 1, 30, 700):
            fin = BASE + timedelta(minutes=minutos)
            bruto, neto = calcular_duraciones(BASE, fin, [pausa(BASE, BASE + timedelta(minutes=pausa_min))])
            assert 0 <= neto <= bruto
