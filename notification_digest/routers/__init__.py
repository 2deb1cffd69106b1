"""
Routers/endpoints del servicio
"""
