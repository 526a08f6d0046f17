"""Motor de Liquidación de Cuentas Médicas.

Este proyecto implementa la liquidación de radicados de cuentas médicas:
extrae los ítems facturados de los soportes, aplica reglas de negocio
versionadas, calcula glosas y valor a pagar, y genera el reporte de
liquidación en Excel.

Características principales:
- Extracción de ítems desde PDF, texto y CSV (OCR opcional con Azure Document Intelligence)
- Reglas de glosa versionadas y configurables
- Almacenamiento en MongoDB con historial de liquidaciones
- Reportes en Azure Storage Account o disco local
"""

__version__ = "1.0.0"
__author__ = "TecSalud Team"
__email__ = "tech@tecsalud.com"

# Configuración para documentación OpenAPI
TITLE = "Motor de Liquidación de Cuentas Médicas"
DESCRIPTION = """
API para la liquidación de cuentas médicas: radicación de casos, carga de soportes,
aplicación de reglas de glosa y generación del reporte de liquidación.

## Características

* **Radicados**: Registro de casos con EPS, NIT del prestador y valor contratado
* **Soportes**: Carga de facturas y anexos en PDF, texto o CSV
* **Reglas versionadas**: Publicación de reglas de glosa por rango y EPS
* **Liquidación**: Cálculo de glosas y valor a pagar con trazabilidad completa
* **Reportes**: Descarga del reporte de liquidación en Excel
"""

VERSION = "1.0.0"
CONTACT = {
    "name": "TecSalud Team",
    "email": "tech@tecsalud.com",
}

TAGS_METADATA = [
    {
        "name": "cases",
        "description": "Radicación y consulta de casos (cuentas médicas)",
    },
    {
        "name": "documents",
        "description": "Carga de soportes de facturación de un caso",
    },
    {
        "name": "liquidation",
        "description": "Ejecución de la liquidación, resultados, historial y reporte en Excel",
    },
    {
        "name": "rules",
        "description": "Publicación y consulta de reglas de glosa versionadas",
    },
    {
        "name": "health",
        "description": "Endpoints para verificar el estado de la aplicación",
    },
]
