# -*- coding: utf-8 -*-
"""
Incentra - Query & Export Service
Read-only access to batches and results, scoped by lifecycle visibility

Reporting only ever reads the current lineage (superseded_by IS NULL)
unless history is asked for explicitly.
"""

import io
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import openpyxl
import pandas as pd
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from sqlalchemy import func

from config import APP_CONFIG, format_currency, format_date
from app import db
from app.errors import NotFoundError, VisibilityError
from app.models import CalculationBatch, CalculationResult, Period, RuleSet
from app.modules.lifecycle import can_view, visible_states

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ('csv', 'xlsx')


class QueryService:
    """Batches and results as seen by a given role"""

    # =========================================================================
    # BATCHES
    # =========================================================================

    def list_batches(self, tenant_id: str, role: Optional[str], period_id: Optional[str] = None,
                     rule_set_id: Optional[str] = None, include_superseded: bool = False) -> List[CalculationBatch]:
        query = CalculationBatch.query.filter(
            CalculationBatch.tenant_id == tenant_id,
            CalculationBatch.lifecycle_state.in_(visible_states(role)),
        )
        if period_id:
            query = query.filter(CalculationBatch.period_id == period_id)
        if rule_set_id:
            query = query.filter(CalculationBatch.rule_set_id == rule_set_id)
        if not include_superseded:
            query = query.filter(CalculationBatch.superseded_by.is_(None))
        return query.order_by(CalculationBatch.created_at.desc()).all()

    def get_visible_batch(self, batch_id: str, role: Optional[str]) -> CalculationBatch:
        batch = db.session.get(CalculationBatch, batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        if not can_view(batch.lifecycle_state, role):
            raise VisibilityError(
                f"Role '{role}' may not view batch {batch_id} in state {batch.lifecycle_state.value}"
            )
        return batch

    # =========================================================================
    # RESULTS
    # =========================================================================

    def get_results(self, batch_id: str, role: Optional[str]) -> List[CalculationResult]:
        batch = self.get_visible_batch(batch_id, role)
        return CalculationResult.query.filter_by(batch_id=batch.id) \
            .order_by(CalculationResult.entity_id).all()

    def lineage_totals(self, tenant_id: str, period_id: str, rule_set_id: str) -> Dict[str, Any]:
        """Aggregate over the current lineage head only"""
        row = db.session.query(
            func.count(CalculationResult.id),
            func.coalesce(func.sum(CalculationResult.total_payout), 0),
        ).join(CalculationBatch, CalculationBatch.id == CalculationResult.batch_id).filter(
            CalculationBatch.tenant_id == tenant_id,
            CalculationBatch.period_id == period_id,
            CalculationBatch.rule_set_id == rule_set_id,
            CalculationBatch.superseded_by.is_(None),
        ).one()
        return {'entity_count': row[0], 'total_payout': row[1]}

    # =========================================================================
    # PAYROLL EXPORT
    # =========================================================================

    def payroll_frame(self, batch_id: str, role: Optional[str]) -> pd.DataFrame:
        """One row per entity, one column per component, plus the total"""
        results = self.get_results(batch_id, role)

        component_names: List[str] = []
        records = []
        for result in results:
            metadata = result.result_metadata or {}
            record = {
                'External ID': metadata.get('externalId'),
                'Name': metadata.get('displayName'),
                'Variant': result.variant_name,
            }
            for component in result.components or []:
                name = component.get('name')
                if name not in component_names:
                    component_names.append(name)
                record[name] = component.get('payout', 0.0)
            record['Total Payout'] = float(result.total_payout or 0)
            record['Flags'] = ', '.join(result.flags or [])
            records.append(record)

        columns = ['External ID', 'Name', 'Variant'] + component_names + ['Total Payout', 'Flags']
        frame = pd.DataFrame(records, columns=columns)
        if component_names:
            frame[component_names] = frame[component_names].astype(float).fillna(0.0)
        return frame.sort_values('External ID', kind='stable').reset_index(drop=True)

    def _summary_rows(self, batch: CalculationBatch) -> List[Tuple[str, Any]]:
        period = db.session.get(Period, batch.period_id)
        rule_set = db.session.get(RuleSet, batch.rule_set_id)
        summary = batch.summary or {}
        return [
            ('Batch', batch.batch_code),
            ('Plan', rule_set.name if rule_set else batch.rule_set_id),
            ('Period', period.canonical_key if period else batch.period_id),
            ('State', batch.lifecycle_state.value),
            ('Entities', batch.entity_count),
            ('Total Payout', format_currency(batch.total_payout or 0)),
            ('Median Payout', format_currency(summary.get('median_payout', 0))),
            ('Generated', format_date(datetime.utcnow())),
        ]

    def export_csv(self, batch_id: str, role: Optional[str]) -> Tuple[bytes, str]:
        batch = self.get_visible_batch(batch_id, role)
        frame = self.payroll_frame(batch_id, role)

        output = io.StringIO()
        frame.to_csv(output, index=False, float_format='%.2f')
        output.write('\n')
        summary = pd.DataFrame(self._summary_rows(batch), columns=['Field', 'Value'])
        summary.to_csv(output, index=False)

        logger.info(f"[{batch.id}] Exported {len(frame)} rows as CSV")
        return output.getvalue().encode('utf-8'), f"payroll_{batch.batch_code}.csv"

    def export_xlsx(self, batch_id: str, role: Optional[str]) -> Tuple[bytes, str]:
        batch = self.get_visible_batch(batch_id, role)
        frame = self.payroll_frame(batch_id, role)

        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = 'Payroll'

        header_fill = PatternFill(start_color='1e3a5f', end_color='1e3a5f', fill_type='solid')
        total_fill = PatternFill(start_color='e2e8f0', end_color='e2e8f0', fill_type='solid')
        white_font = Font(name='Arial', size=10, bold=True, color='FFFFFF')
        border = Border(
            left=Side(style='thin'),
            right=Side(style='thin'),
            top=Side(style='thin'),
            bottom=Side(style='thin')
        )
        decimal_format = '#,##0.00'

        # === TITLE ===
        last_col = get_column_letter(max(len(frame.columns), 1))
        ws.merge_cells(f'A1:{last_col}1')
        ws['A1'] = f"{APP_CONFIG['APP_NAME']} payroll export - {batch.batch_code}"
        ws['A1'].font = Font(name='Arial', size=14, bold=True)
        ws['A1'].alignment = Alignment(horizontal='center')

        # === TABLE ===
        header_row = 3
        for col, name in enumerate(frame.columns, start=1):
            cell = ws.cell(row=header_row, column=col, value=name)
            cell.font = white_font
            cell.fill = header_fill
            cell.border = border
            cell.alignment = Alignment(horizontal='center', wrap_text=True)

        numeric_columns = set(frame.select_dtypes('number').columns)
        for offset, record in enumerate(frame.itertuples(index=False), start=1):
            for col, (name, value) in enumerate(zip(frame.columns, record), start=1):
                cell = ws.cell(row=header_row + offset, column=col,
                               value=None if pd.isna(value) else value)
                cell.border = border
                if name in numeric_columns:
                    cell.number_format = decimal_format

        # Totals
        total_row = header_row + len(frame) + 1
        ws.cell(row=total_row, column=1, value='TOTAL').font = Font(bold=True)
        for col, name in enumerate(frame.columns, start=1):
            cell = ws.cell(row=total_row, column=col)
            cell.fill = total_fill
            cell.border = border
            if name in numeric_columns:
                cell.value = round(float(frame[name].sum()), 2)
                cell.number_format = decimal_format
                cell.font = Font(bold=True)

        # === SUMMARY BLOCK ===
        row = total_row + 2
        for label, value in self._summary_rows(batch):
            ws.cell(row=row, column=1, value=label).font = Font(bold=True)
            ws.cell(row=row, column=2, value=value)
            row += 1

        for col in range(1, len(frame.columns) + 1):
            ws.column_dimensions[get_column_letter(col)].width = 18

        output = io.BytesIO()
        wb.save(output)
        logger.info(f"[{batch.id}] Exported {len(frame)} rows as XLSX")
        return output.getvalue(), f"payroll_{batch.batch_code}.xlsx"

    def export(self, batch_id: str, role: Optional[str], fmt: str = 'csv') -> Tuple[bytes, str]:
        fmt = (fmt or 'csv').lower()
        if fmt == 'xlsx':
            return self.export_xlsx(batch_id, role)
        if fmt == 'csv':
            return self.export_csv(batch_id, role)
        raise ValueError(f"Unsupported export format '{fmt}' (expected one of {EXPORT_FORMATS})")


# Singleton instance
query_service = QueryService()
