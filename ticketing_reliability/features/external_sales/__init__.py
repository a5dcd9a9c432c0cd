"""Requests for ticket sales data held by the external sales service."""

from ticketing_reliability.features.external_sales.schemas import TicketSalesDataRequest
from ticketing_reliability.features.external_sales.service import request_external_ticket_sales

__all__ = ["TicketSalesDataRequest", "request_external_ticket_sales"]
