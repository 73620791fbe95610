import html
import logging
from pathlib import Path
from typing import Dict, List

from photo_cleaner.core.models import DuplicateGroup
from photo_cleaner.utils.file_utils import format_file_size

logger = logging.getLogger(__name__)


def summarize_groups(groups: List[DuplicateGroup]) -> Dict:
    """Totals across duplicate groups plus one entry per group"""
    return {
        'total_groups': len(groups),
        'total_photos': sum(group.photo_count for group in groups),
        'duplicates_to_remove': sum(group.duplicates_to_remove for group in groups),
        'potential_space_saved': sum(group.space_saved for group in groups),
        'groups': [
            {
                'id': group.id,
                'group_key': group.group_key,
                'photo_count': group.photo_count,
                'total_size': group.total_size,
                'space_saved': group.space_saved,
                'recommended_keep': group.recommended_keep.local_identifier
                if group.recommended_keep else None,
                'recommended_action': _recommended_action(group),
            }
            for group in groups
        ],
    }


def _recommended_action(group: DuplicateGroup) -> str:
    keep = group.recommended_keep
    if keep is None:
        return "Review manually"
    return (f"Keep {keep.file_name}, delete {group.duplicates_to_remove} "
            f"duplicates to free {format_file_size(group.space_saved)}")


class DuplicateReportGenerator:
    """
    Generate reports for duplicate detection results
    """

    def generate_report(self,
                        groups: List[DuplicateGroup],
                        output_path: str = "duplicate_report.html") -> Dict:
        """
        Generate HTML report with duplicate groups. Returns the summary the
        report was built from.
        """
        summary = summarize_groups(groups)

        stats_html = f"""
        <div class="statistics">
            <h2>Duplicate Detection Summary</h2>
            <p><strong>Total duplicate groups:</strong> {summary['total_groups']}</p>
            <p><strong>Photos to remove:</strong> {summary['duplicates_to_remove']}</p>
            <p><strong>Potential space savings:</strong> {format_file_size(summary['potential_space_saved'])}</p>
        </div>
        """

        groups_html = "<div class='duplicate-groups'>"
        for idx, group in enumerate(groups):
            groups_html += self._create_group_html(idx, group)
        groups_html += "</div>"

        final_html = self._create_html_template()
        final_html = final_html.replace("{{STATS}}", stats_html)
        final_html = final_html.replace("{{GROUPS}}", groups_html)

        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(final_html, encoding='utf-8')

        logger.info("Report generated: %s", output)
        return summary

    def _create_group_html(self, idx: int, group: DuplicateGroup) -> str:
        keep = group.recommended_keep
        group_html = f"""
        <div class="duplicate-group">
            <h3>Group {idx + 1} ({group.photo_count} photos, {format_file_size(group.space_saved)} reclaimable)</h3>
        """
        if keep is not None:
            group_html += f"""
            <div class="representative">
                <h4>Keep (Recommended)</h4>
                {self._photo_html(keep)}
            </div>
            """

        others = [photo for photo in group.photos if photo.id != group.recommended_keep_id]
        group_html += f"""
            <div class="duplicates-list">
                <h4>Duplicates ({len(others)}) - Consider Deleting</h4>
        """
        for photo in others:
            group_html += f"""
                <div class="duplicate-item">{self._photo_html(photo)}</div>
            """
        group_html += """
            </div>
        </div>
        """
        return group_html

    @staticmethod
    def _photo_html(photo) -> str:
        path = html.escape(photo.file_path, quote=True)
        return (f'<img src="file://{path}" />'
                f'<p>{html.escape(photo.file_name)}</p>'
                f'<p class="file-info">{photo.width}x{photo.height}, '
                f'{format_file_size(photo.file_size)}</p>')

    def _create_html_template(self) -> str:
        return """
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <title>Duplicate Photo Report</title>
            <style>
                body { font-family: Arial, sans-serif; margin: 20px; }
                .statistics { background: #f0f0f0; padding: 20px; border-radius: 5px; }
                .duplicate-group { border: 1px solid #ccc; margin: 20px 0; padding: 15px; }
                .representative { background: #e8f5e9; padding: 10px; }
                .duplicates-list { display: grid; grid-template-columns: repeat(auto-fill, minmax(200px, 1fr)); gap: 10px; margin-top: 10px; }
                .duplicate-item { border: 1px solid #ddd; padding: 10px; text-align: center; }
                img { max-width: 100%; height: auto; max-height: 200px; object-fit: contain; }
                .file-info { font-size: 0.9em; color: #666; }
            </style>
        </head>
        <body>
            <h1>Duplicate Photo Report</h1>
            {{STATS}}
            {{GROUPS}}
        </body>
        </html>
        """
