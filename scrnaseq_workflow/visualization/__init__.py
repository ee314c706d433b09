# scrnaseq_workflow/visualization/__init__.py
