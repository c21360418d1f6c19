from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill

TRUCK_HEADERS = [
    "Fleet #",
    "License Plate",
    "Capacity (kg)",
    "Allocated (kg)",
    "Available (kg)",
    "Utilization %",
    "Orders",
    "Route Status",
    "Overallocated",
]

STOP_HEADERS = [
    "Fleet #",
    "Stop",
    "Allocation ID",
    "Order ID",
    "Customer",
    "Address",
    "City",
    "Weight (kg)",
    "Amount",
    "Status",
]


def _style_header(sheet, headers, widths):
    sheet.append(headers)
    header_fill = PatternFill("solid", fgColor="1F4E78")
    header_font = Font(color="FFFFFF", bold=True)
    header_alignment = Alignment(horizontal="center", vertical="center")
    for col_idx, _ in enumerate(headers, start=1):
        header_cell = sheet.cell(row=1, column=col_idx)
        header_cell.fill = header_fill
        header_cell.font = header_font
        header_cell.alignment = header_alignment
    for col, width in widths.items():
        sheet.column_dimensions[col].width = width
    sheet.freeze_panes = "A2"


def build_schedule_workbook(schedule_date, schedule):
    workbook = Workbook()
    trucks_sheet = workbook.active
    trucks_sheet.title = "Trucks"
    _style_header(
        trucks_sheet,
        TRUCK_HEADERS,
        {"A": 12, "B": 16, "C": 15, "D": 15, "E": 15, "F": 14, "G": 10, "H": 15, "I": 15},
    )

    stops_sheet = workbook.create_sheet("Stops")
    _style_header(
        stops_sheet,
        STOP_HEADERS,
        {"A": 12, "B": 8, "C": 14, "D": 10, "E": 28, "F": 32, "G": 18, "H": 13, "I": 12, "J": 12},
    )

    for entry in schedule or []:
        truck = entry.get("truck") or {}
        capacity = entry.get("capacity_info") or {}
        trucks_sheet.append(
            [
                truck.get("fleet_number") or "",
                truck.get("license_plate") or "",
                capacity.get("total_capacity_kg"),
                capacity.get("allocated_weight_kg"),
                capacity.get("available_capacity_kg"),
                capacity.get("utilization_percent"),
                entry.get("total_orders") or 0,
                entry.get("route_status") or "",
                "YES" if capacity.get("is_overallocated") else "",
            ]
        )
        for allocation in entry.get("allocations") or []:
            order = allocation.get("order") or {}
            address = order.get("delivery_address") or {}
            stops_sheet.append(
                [
                    truck.get("fleet_number") or "",
                    allocation.get("stop_sequence"),
                    allocation.get("id"),
                    allocation.get("order_id"),
                    order.get("customer_name") or "",
                    address.get("line1") or "",
                    address.get("city") or "",
                    allocation.get("estimated_weight_kg"),
                    order.get("total_amount"),
                    allocation.get("status") or "",
                ]
            )

    trucks_sheet.auto_filter.ref = f"A1:I{max(trucks_sheet.max_row, 1)}"
    stops_sheet.auto_filter.ref = f"A1:J{max(stops_sheet.max_row, 1)}"
    workbook.properties.title = f"Truck schedule {schedule_date}"
    return workbook
